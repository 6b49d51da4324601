"""
Cursor Resync for Speculative Decoding

After every acceptance decision both models must agree with the committed
sequence before the next draft starts:

- The verifier already absorbed the whole window during verification, so its
  cursor just moves forward by the number of committed positions.
- The draft cache is only valid as far as its own guesses matched. On a full
  accept it is missing [d_k, bonus]; on a partial accept everything from the
  mismatch onward is stale and gets overwritten by forwarding the
  replacement token at the mismatch slot. The resync forward also yields the
  draft's next pending prediction.
"""

import logging
from dataclasses import dataclass

import torch

from .acceptance import AcceptanceOutcome, FullAccept
from .draft import DraftWindow
from .errors import ModelForwardError
from .interfaces import CausalModel, as_2d_logits
from .verifier import VerifierResult

logger = logging.getLogger(__name__)


@dataclass
class ModelContext:
    """
    Position cursor for one model.

    Attributes:
        name: Label used in logs ("draft" or "verifier")
        position: Number of leading cache slots holding committed history
    """

    name: str
    position: int = 0

    def advance(self, n: int) -> None:
        """Move the cursor past n tokens that were just forwarded."""
        if n < 0:
            raise ValueError(f"{self.name} cursor cannot move backwards by {n}")
        self.position += n

    def reset_to(self, slot: int) -> None:
        """Rewind the cursor to a slot that is about to be overwritten."""
        if slot > self.position:
            raise ValueError(
                f"{self.name} cursor cannot jump ahead from {self.position} to {slot}"
            )
        self.position = slot


@dataclass
class ResyncResult:
    """
    Seeds for the next iteration.

    Attributes:
        draft_pending: Draft model's next greedy prediction [1, 1] (device)
        verifier_seed: Last committed token [1, 1] (device)
        draft_forward_calls: Draft forwards issued during resync
    """

    draft_pending: torch.Tensor
    verifier_seed: torch.Tensor
    draft_forward_calls: int = 1


class Resync:
    """Realigns both model cursors after an acceptance decision."""

    def __init__(self, draft_lm: CausalModel):
        self.logger = logging.getLogger(__name__)
        self.draft_lm = draft_lm

    def apply(
        self,
        outcome: AcceptanceOutcome,
        window: DraftWindow,
        result: VerifierResult,
        draft_ctx: ModelContext,
        verifier_ctx: ModelContext,
    ) -> ResyncResult:
        """
        Realign cursors and re-prime the draft cache.

        Args:
            outcome: Decision from the acceptance comparator
            window: The window that was verified
            result: Verifier output for that window
            draft_ctx: Draft cursor, positioned at the slot of d_k
            verifier_ctx: Verifier cursor, positioned at the slot of the seed

        Returns:
            ResyncResult with the next iteration's seeds

        Raises:
            ModelForwardError: If the draft resync forward fails
        """
        device = self.draft_lm.device
        # Token at the last committed slot, kept on the verifier's device
        verifier_seed = result.prediction_ids[outcome.accepted_count].view(1, 1)
        last_committed = verifier_seed.to(device, non_blocking=True)

        if isinstance(outcome, FullAccept):
            last_draft = window.candidates[-1].view(1, 1)
            draft_input = torch.cat([last_draft, last_committed], dim=1)
            draft_slot = draft_ctx.position
        else:
            draft_input = last_committed
            draft_slot = window.start_position + outcome.accepted_count
            draft_ctx.reset_to(draft_slot)

        try:
            logits = as_2d_logits(self.draft_lm.forward(draft_input, draft_slot))
        except ModelForwardError:
            self.logger.error(
                f"Draft resync forward failed at position={draft_slot} "
                f"({type(outcome).__name__})"
            )
            raise

        draft_ctx.advance(draft_input.shape[1])
        verifier_ctx.advance(outcome.positions_advanced)

        self.logger.debug(
            f"Resync {type(outcome).__name__}: draft_pos={draft_ctx.position}, "
            f"verifier_pos={verifier_ctx.position}"
        )

        return ResyncResult(
            draft_pending=torch.argmax(logits[-1], dim=-1).view(1, 1),
            verifier_seed=verifier_seed,
        )
