"""
Acceptance Comparator for Speculative Decoding

Exact-match, first-mismatch rule: accept draft tokens while they equal the
verifier's greedy prediction. At the first disagreement the verifier's token
replaces the draft token and everything drafted after it is discarded, since
those tokens were conditioned on a rejected premise.
"""

from dataclasses import dataclass
from typing import List, Sequence, Union


@dataclass(frozen=True)
class FullAccept:
    """Every draft token matched; the verifier's next prediction comes for free."""

    bonus_token: int
    accepted_count: int

    @property
    def positions_advanced(self) -> int:
        return self.accepted_count + 1

    def committed_tokens(self, draft_tokens: Sequence[int]) -> List[int]:
        return list(draft_tokens[: self.accepted_count]) + [self.bonus_token]


@dataclass(frozen=True)
class PartialAccept:
    """Draft diverged at index accepted_count; the verifier's token replaces it."""

    accepted_count: int
    replacement_token: int

    @property
    def positions_advanced(self) -> int:
        return self.accepted_count + 1

    def committed_tokens(self, draft_tokens: Sequence[int]) -> List[int]:
        return list(draft_tokens[: self.accepted_count]) + [self.replacement_token]


AcceptanceOutcome = Union[FullAccept, PartialAccept]


class AcceptanceComparator:
    """Compares a draft window against verifier predictions."""

    def compare(
        self,
        draft_tokens: Sequence[int],
        verifier_predictions: Sequence[int],
        bonus_token: int,
    ) -> AcceptanceOutcome:
        """
        Decide how much of the draft window to commit.

        Args:
            draft_tokens: Candidates d_1..d_k
            verifier_predictions: Verifier arg-max for window rows 0..k-1
            bonus_token: Verifier arg-max for row k

        Returns:
            FullAccept or PartialAccept
        """
        if len(draft_tokens) != len(verifier_predictions):
            raise ValueError(
                f"Length mismatch: {len(draft_tokens)} draft tokens vs "
                f"{len(verifier_predictions)} verifier predictions"
            )
        if not draft_tokens:
            raise ValueError("Cannot compare an empty draft window")

        for i, (draft_tok, pred_tok) in enumerate(
            zip(draft_tokens, verifier_predictions)
        ):
            if draft_tok != pred_tok:
                return PartialAccept(
                    accepted_count=i, replacement_token=int(pred_tok)
                )

        return FullAccept(bonus_token=int(bonus_token), accepted_count=len(draft_tokens))
