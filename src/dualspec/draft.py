"""
Draft Generator for Speculative Decoding

Runs the small draft model for up to K greedy steps. Every candidate stays on
the model's device: each step's arg-max is written straight into the
verification buffer with an in-place device copy, so the loop never waits on
the host.
"""

import logging
from dataclasses import dataclass
from typing import List

import torch

from .errors import ModelForwardError
from .interfaces import CausalModel, as_2d_logits

logger = logging.getLogger(__name__)


@dataclass
class DraftWindow:
    """
    Candidate tokens proposed in one iteration.

    Attributes:
        buffer: Verification input [1, k + 1] on the draft device. Slot 0 is
                reserved for the verifier seed; slots 1..k hold the candidates.
        start_position: Cache slot of the first candidate
        k: Number of candidates
        forward_calls: Draft forward passes issued while proposing
    """

    buffer: torch.Tensor
    start_position: int
    k: int
    forward_calls: int = 0

    @property
    def candidates(self) -> torch.Tensor:
        """Device view of the k candidates [k]."""
        return self.buffer[0, 1:]

    def to_host(self) -> List[int]:
        """Copy candidates to the host. Only valid after a device barrier."""
        return self.candidates.tolist()


class DraftGenerator:
    """Greedy K-step proposer driven by the draft model."""

    def __init__(self, draft_lm: CausalModel):
        self.logger = logging.getLogger(__name__)
        self.draft_lm = draft_lm

    def propose(
        self, k: int, seed_token: torch.Tensor, draft_position: int
    ) -> DraftWindow:
        """
        Propose k candidate tokens.

        The seed is the draft model's pending prediction (from prefill or the
        previous resync), so it is the first candidate as-is. Each further
        candidate costs one forward over the previous one.

        Args:
            k: Number of candidates to propose (>= 1)
            seed_token: Pending prediction [1, 1] on the draft device
            draft_position: Cache slot the seed will occupy

        Returns:
            DraftWindow whose buffer feeds the verifier directly

        Raises:
            ModelForwardError: If any draft forward fails
        """
        if k < 1:
            raise ValueError(f"Draft window must hold at least one token, got k={k}")

        device = seed_token.device
        buffer = torch.zeros((1, k + 1), dtype=torch.long, device=device)
        buffer[:, 1:2] = seed_token.view(1, 1)

        current = seed_token.view(1, 1)
        position = draft_position
        for step in range(1, k):
            try:
                logits = as_2d_logits(self.draft_lm.forward(current, position))
            except ModelForwardError:
                self.logger.error(
                    f"Draft forward failed at step {step}/{k} (position={position})"
                )
                raise

            next_token = torch.argmax(logits[-1], dim=-1).view(1, 1)
            buffer[:, step + 1 : step + 2] = next_token
            current = next_token
            position += 1

        return DraftWindow(
            buffer=buffer,
            start_position=draft_position,
            k=k,
            forward_calls=k - 1,
        )
