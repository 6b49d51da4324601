"""
Tests for the fake causal model and byte tokenizer.
"""

import pytest
import torch

from dualspec.errors import ModelForwardError, TokenizationError
from dualspec.fake_lm import (
    BOS_TOKEN_ID,
    NUM_SPECIAL_TOKENS,
    FakeCausalLM,
    FakeTokenizer,
    create_fake_pair,
)


def ids(*tokens):
    return torch.tensor([list(tokens)], dtype=torch.long)


class TestFakeCausalLM:
    """Test the positional cache semantics."""

    def test_logits_shape(self):
        """Test one row of logits per input token."""
        model = FakeCausalLM(vocab_size=64)
        logits = model.forward(ids(5, 6, 7), 0)

        assert logits.shape == (3, 64)
        assert model.cached_tokens == [5, 6, 7]

    def test_incremental_matches_batched(self):
        """Test that forwarding one token at a time gives the same predictions."""
        batched = FakeCausalLM()
        incremental = FakeCausalLM()

        full = batched.forward(ids(10, 20, 30, 40), 0).argmax(dim=-1).tolist()
        steps = [
            incremental.forward(ids(token), position).argmax(dim=-1).item()
            for position, token in enumerate([10, 20, 30, 40])
        ]

        assert full == steps

    def test_overwrite_discards_tail(self):
        """Test that a forward at an earlier slot replaces the stale suffix."""
        model = FakeCausalLM()
        model.forward(ids(10, 20, 30, 40), 0)
        rewritten = model.forward(ids(99), 2).argmax(dim=-1).item()

        fresh = FakeCausalLM()
        expected = fresh.forward(ids(10, 20, 99), 0).argmax(dim=-1)[-1].item()

        assert model.cached_tokens == [10, 20, 99]
        assert rewritten == expected

    def test_gap_rejected(self):
        """Test that writing past the end of the cache fails."""
        model = FakeCausalLM()
        model.forward(ids(10, 20), 0)

        with pytest.raises(ModelForwardError, match="gap"):
            model.forward(ids(30), 3)

    def test_out_of_vocab_rejected(self):
        """Test that tokens outside the vocabulary fail."""
        model = FakeCausalLM(vocab_size=16)

        with pytest.raises(ModelForwardError, match="outside vocabulary"):
            model.forward(ids(16), 0)

    def test_injected_failure(self):
        """Test that fail_on_call raises on exactly that call."""
        model = FakeCausalLM(fail_on_call=2)
        model.forward(ids(10), 0)

        with pytest.raises(ModelForwardError) as excinfo:
            model.forward(ids(11), 1)
        assert excinfo.value.model_name == "fake-model"
        assert excinfo.value.start_position == 1

    def test_never_predicts_special_tokens(self):
        """Test that predictions stay in the byte range."""
        model = FakeCausalLM()
        predictions = model.forward(ids(*range(4, 200)), 0).argmax(dim=-1)

        assert int(predictions.min()) >= NUM_SPECIAL_TOKENS

    def test_perturbed_pair_disagrees_periodically(self):
        """Test that the draft differs from the verifier only at perturbed slots."""
        verifier, draft, _ = create_fake_pair(draft_perturb_every=3)
        tokens = ids(*range(10, 22))

        v = verifier.forward(tokens, 0).argmax(dim=-1).tolist()
        d = draft.forward(tokens, 0).argmax(dim=-1).tolist()

        for position, (a, b) in enumerate(zip(v, d)):
            assert (a != b) == ((position + 1) % 3 == 0)

    def test_clear_cache(self):
        """Test that clearing starts a fresh sequence."""
        model = FakeCausalLM()
        model.forward(ids(10, 20), 0)
        model.clear_cache()

        assert model.cached_tokens == []
        with pytest.raises(ModelForwardError):
            model.forward(ids(30), 1)


class TestFakeTokenizer:
    """Test byte-level tokenizer."""

    def test_encode_adds_bos(self):
        """Test BOS handling."""
        assert FakeTokenizer().encode("A")[0] == BOS_TOKEN_ID
        assert FakeTokenizer(add_bos=False).encode("A") == [NUM_SPECIAL_TOKENS + 65]

    def test_decode_unicode(self):
        """Test that multibyte text survives encoding."""
        tokenizer = FakeTokenizer()
        text = "naïve 東京"

        assert tokenizer.decode(tokenizer.encode(text)) == text

    def test_decode_keeps_special(self):
        """Test rendering special tokens when not skipped."""
        tokenizer = FakeTokenizer()
        decoded = tokenizer.decode([BOS_TOKEN_ID, NUM_SPECIAL_TOKENS + 65], False)

        assert decoded == "<special_2>A"

    def test_encode_rejects_non_text(self):
        """Test that non-string input fails."""
        with pytest.raises(TokenizationError):
            FakeTokenizer().encode(b"bytes")

    def test_decode_rejects_negative(self):
        """Test that negative ids fail."""
        with pytest.raises(TokenizationError):
            FakeTokenizer().decode([-1])


class TestGreedyContinuation:
    """Test that greedy decoding with the fake model does not degenerate."""

    def test_continuation_varies(self):
        """Test that a long greedy run keeps producing different tokens."""
        model = FakeCausalLM()
        prompt = FakeTokenizer().encode("The quick brown fox")
        logits = model.forward(torch.tensor([prompt]), 0)

        generated = []
        for position in range(len(prompt), len(prompt) + 30):
            token = int(torch.argmax(logits[-1]))
            generated.append(token)
            logits = model.forward(ids(token), position)

        assert len(set(generated)) >= 20
