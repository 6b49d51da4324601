"""
Batched Verifier for Speculative Decoding

Checks a whole draft window with one verifier forward. Because attention is
causal, row i of the output predicts the token that should follow the first
i + 1 window tokens, which is exactly what draft candidate i + 1 guessed. Row
k predicts the token after the last candidate and becomes the bonus token when
every candidate is accepted.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import torch

from .draft import DraftWindow
from .errors import ModelForwardError
from .interfaces import CausalModel, as_2d_logits

logger = logging.getLogger(__name__)


@dataclass
class VerifierResult:
    """
    Output of one batched verification pass.

    Attributes:
        prediction_ids: Device arg-max for every window row [k + 1]
        bonus_logits: Raw distribution at row k [vocab_size]
        k: Number of draft candidates that were verified
        predictions: Host copy of rows 0..k-1, filled by materialize()
        bonus_token: Host arg-max of bonus_logits, filled by materialize()
    """

    prediction_ids: torch.Tensor
    bonus_logits: torch.Tensor
    k: int
    predictions: List[int] = field(default_factory=list)
    bonus_token: Optional[int] = None

    def materialize(self) -> "VerifierResult":
        """Copy predictions to the host in one transfer. Call after a barrier."""
        ids = self.prediction_ids.tolist()
        self.predictions = ids[: self.k]
        self.bonus_token = ids[self.k]
        return self


class VerifierBatch:
    """Runs the verifier model over [seed, d_1 .. d_k] in a single call."""

    def __init__(self, verifier_lm: CausalModel):
        self.logger = logging.getLogger(__name__)
        self.verifier_lm = verifier_lm

    def verify(
        self,
        seed_token: torch.Tensor,
        draft_window: DraftWindow,
        verifier_position: int,
    ) -> VerifierResult:
        """
        Verify a draft window.

        Args:
            seed_token: Last committed token [1, 1]; re-forwarded at verifier_position
            draft_window: Candidates from the draft generator
            verifier_position: Cache slot of the seed token

        Returns:
            VerifierResult with device-resident predictions

        Raises:
            ModelForwardError: If the verifier forward fails
        """
        device = self.verifier_lm.device
        batch = draft_window.buffer
        if batch.device != torch.device(device):
            batch = batch.to(device, non_blocking=True)
        batch[:, 0:1] = seed_token.view(1, 1).to(batch.device)

        try:
            logits = as_2d_logits(self.verifier_lm.forward(batch, verifier_position))
        except ModelForwardError:
            self.logger.error(
                f"Verifier forward failed for window k={draft_window.k} "
                f"at position={verifier_position}"
            )
            raise

        expected_rows = draft_window.k + 1
        if logits.shape[0] != expected_rows:
            raise ModelForwardError(
                f"Verifier returned {logits.shape[0]} rows for a window of "
                f"{expected_rows} tokens",
                model_name=self.verifier_lm.model_name,
                start_position=verifier_position,
            )

        return VerifierResult(
            prediction_ids=torch.argmax(logits, dim=-1),
            bonus_logits=logits[draft_window.k],
            k=draft_window.k,
        )
