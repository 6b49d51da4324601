"""
Tests for the Hugging Face wrappers using a tiny randomly initialised GPT-2.
"""

import pytest
import torch
from transformers import GPT2Config, GPT2LMHeadModel

from dualspec.errors import ModelForwardError
from dualspec.fake_lm import FakeTokenizer
from dualspec.hf_wrappers import HFCausalLM, resolve_dtype
from dualspec.pipeline import SpeculativePipeline


@pytest.fixture(scope="module")
def tiny_model():
    torch.manual_seed(0)
    config = GPT2Config(
        vocab_size=260,
        n_positions=128,
        n_embd=32,
        n_layer=2,
        n_head=2,
        attn_implementation="eager",
    )
    return GPT2LMHeadModel(config)


@pytest.fixture
def lm(tiny_model):
    return HFCausalLM("tiny-gpt2", device="cpu", dtype="float32", model=tiny_model)


def ids(*tokens):
    return torch.tensor([list(tokens)], dtype=torch.long)


class TestResolveDtype:
    """Test dtype names."""

    def test_auto(self):
        assert resolve_dtype("auto", "cpu") == torch.float32
        assert resolve_dtype("auto", "cuda") == torch.float16

    def test_unknown(self):
        with pytest.raises(ValueError):
            resolve_dtype("int8", "cpu")


class TestHFCausalLM:
    """Test positioned cache behaviour."""

    def test_incremental_matches_full(self, lm):
        """Test that continuing from the cache equals one full forward."""
        tokens = ids(10, 20, 30, 40, 50, 60)
        full = lm.forward(tokens, 0)

        lm.clear_cache()
        lm.forward(tokens[:, :3], 0)
        tail = lm.forward(tokens[:, 3:], 3)

        assert full.shape == (6, 260)
        assert torch.allclose(full[3:], tail, atol=1e-4)

    def test_crop_overwrites_stale_tail(self, lm):
        """Test that a forward at an earlier slot ignores rejected entries."""
        lm.forward(ids(10, 20, 30, 41, 42), 0)
        rewritten = lm.forward(ids(99), 3)

        lm.clear_cache()
        expected = lm.forward(ids(10, 20, 30, 99), 0)

        assert torch.allclose(rewritten[-1], expected[-1], atol=1e-4)

    def test_gap_rejected(self, lm):
        """Test that skipping cache slots fails."""
        lm.forward(ids(10, 20), 0)

        with pytest.raises(ModelForwardError, match="gap"):
            lm.forward(ids(30), 5)

    def test_properties(self, lm):
        assert lm.vocab_size == 260
        assert lm.model_name == "tiny-gpt2"
        assert lm.device == torch.device("cpu")


class TestHFPipeline:
    """Test the decode loop on a real transformer."""

    def test_generate(self, tiny_model):
        """Test a short session with a draft sharing the verifier's weights."""
        verifier = HFCausalLM("tiny-verifier", device="cpu", model=tiny_model)
        draft = HFCausalLM("tiny-draft", device="cpu", model=tiny_model)
        pipeline = SpeculativePipeline(
            verifier,
            draft,
            FakeTokenizer(),
            controller="fixed",
            controller_params={"k": 3},
            stop_token_ids=[],
        )

        result = pipeline.generate("abc", max_tokens=10)

        assert result["num_generated"] == 10
        assert result["draft_position"] <= len(result["tokens"])
        for iteration in result["iterations"]:
            assert iteration["positions_advanced"] == iteration["accepted_count"] + 1
