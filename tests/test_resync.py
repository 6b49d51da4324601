"""
Tests for cursor resynchronization after an acceptance decision.
"""

import pytest
import torch

from dualspec.acceptance import AcceptanceComparator, FullAccept, PartialAccept
from dualspec.draft import DraftGenerator
from dualspec.errors import ModelForwardError
from dualspec.fake_lm import FakeCausalLM, create_fake_pair
from dualspec.resync import ModelContext, Resync
from dualspec.verifier import VerifierBatch

PROMPT = [2, 83, 112, 101, 99]


def run_iteration(verifier, draft, k):
    """Prefill both models and run one draft/verify/compare/resync step."""
    prompt = torch.tensor([PROMPT], dtype=torch.long)
    draft_ctx = ModelContext("draft")
    verifier_ctx = ModelContext("verifier")

    pending = torch.argmax(draft.forward(prompt, 0)[-1]).view(1, 1)
    draft_ctx.advance(len(PROMPT))
    verifier.forward(prompt, 0)
    verifier_ctx.advance(len(PROMPT) - 1)

    window = DraftGenerator(draft).propose(k, pending, draft_ctx.position)
    draft_ctx.advance(window.forward_calls)
    result = VerifierBatch(verifier).verify(
        prompt[:, -1:], window, verifier_ctx.position
    ).materialize()
    draft_tokens = window.to_host()
    outcome = AcceptanceComparator().compare(
        draft_tokens, result.predictions, result.bonus_token
    )
    resync = Resync(draft).apply(outcome, window, result, draft_ctx, verifier_ctx)
    return outcome, outcome.committed_tokens(draft_tokens), resync, draft_ctx, verifier_ctx


class TestModelContext:
    """Test cursor bookkeeping."""

    def test_advance(self):
        """Test forward movement."""
        ctx = ModelContext("draft")
        ctx.advance(5)
        ctx.advance(0)
        assert ctx.position == 5

    def test_advance_negative(self):
        """Test that cursors cannot move backwards through advance."""
        with pytest.raises(ValueError):
            ModelContext("draft", 3).advance(-1)

    def test_reset_to(self):
        """Test rewinding to an earlier slot."""
        ctx = ModelContext("draft", 7)
        ctx.reset_to(4)
        assert ctx.position == 4

        with pytest.raises(ValueError):
            ctx.reset_to(5)


class TestResync:
    """Test realignment of both caches."""

    def test_full_accept(self):
        """Test that the draft absorbs [d_k, bonus] and both cursors line up."""
        verifier, draft, _ = create_fake_pair()

        outcome, committed, resync, draft_ctx, verifier_ctx = run_iteration(
            verifier, draft, k=3
        )

        assert isinstance(outcome, FullAccept)
        assert draft.forward_log[-1] == (len(PROMPT) + 2, 2)
        assert draft_ctx.position == len(PROMPT) + 4
        assert verifier_ctx.position == len(PROMPT) + 3
        assert draft.cached_tokens == PROMPT + committed
        assert resync.verifier_seed.item() == committed[-1]

    def test_partial_accept(self):
        """Test that the replacement overwrites the first rejected draft slot."""
        verifier, draft, _ = create_fake_pair(draft_perturb_every=1)

        outcome, committed, resync, draft_ctx, verifier_ctx = run_iteration(
            verifier, draft, k=3
        )

        assert outcome == PartialAccept(
            accepted_count=0, replacement_token=committed[0]
        )
        assert draft.forward_log[-1] == (len(PROMPT), 1)
        assert draft_ctx.position == len(PROMPT) + 1
        assert verifier_ctx.position == len(PROMPT)
        assert draft.cached_tokens == PROMPT + committed
        assert resync.verifier_seed.item() == committed[-1]

    def test_pending_matches_fresh_model(self):
        """Test that the next pending token equals a fresh draft's prediction."""
        verifier, draft, _ = create_fake_pair(draft_perturb_every=2)

        _, committed, resync, draft_ctx, _ = run_iteration(verifier, draft, k=4)

        fresh = FakeCausalLM(perturb_every=2)
        logits = fresh.forward(torch.tensor([PROMPT + committed]), 0)
        assert resync.draft_pending.item() == torch.argmax(logits[-1]).item()
        assert draft_ctx.position == len(PROMPT) + len(committed)

    def test_resync_failure_propagates(self):
        """Test that a failing resync forward is surfaced."""
        verifier, draft, _ = create_fake_pair()
        draft.fail_on_call = 4

        with pytest.raises(ModelForwardError):
            run_iteration(verifier, draft, k=3)
