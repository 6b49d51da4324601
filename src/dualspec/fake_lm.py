"""
Fake Language Model for Testing

Provides FakeCausalLM, a deterministic model with a real positional cache, and
FakeTokenizer, a reversible byte-level tokenizer. Together they exercise the
speculative decoding loop without loading actual weights.
"""

import logging
from typing import Any, List, Optional, Sequence, Tuple

import torch
import torch.nn.functional as F

from .errors import ModelForwardError, TokenizationError
from .interfaces import CausalModel, Tokenizer

# Special token layout shared by the fake model and tokenizer
PAD_TOKEN_ID = 0
EOS_TOKEN_ID = 1
BOS_TOKEN_ID = 2
UNK_TOKEN_ID = 3
NUM_SPECIAL_TOKENS = 4
BYTE_VOCAB_SIZE = NUM_SPECIAL_TOKENS + 256

# Knuth multiplicative hashing constant
HASH_MULTIPLIER = 2654435761


class FakeCausalLM(CausalModel):
    """
    Fake causal LM whose prediction depends on the whole cached prefix.

    The greedy prediction after slot p hashes h = multiplier * sum(cache[0..p])
    + p + offset with a multiplicative hash and keeps the high bits:

        NUM_SPECIAL + ((h * HASH_MULTIPLIER) % 2**32 >> 16) % (vocab - NUM_SPECIAL)

    h grows with every cached token, so greedy output has no fixed point,
    and a stale or misaligned cache changes the output just like a real model.

    Two instances built with the same parameters always agree. Setting
    perturb_every shifts the prediction at every slot p with
    (p + 1) % perturb_every == 0, which makes a draft model disagree with an
    unperturbed verifier at predictable places.
    """

    def __init__(
        self,
        model_name: str = "fake-model",
        vocab_size: int = BYTE_VOCAB_SIZE,
        device: str = "cpu",
        multiplier: int = 31,
        offset: int = 7,
        perturb_every: Optional[int] = None,
        fail_on_call: Optional[int] = None,
    ):
        """
        Initialize the fake language model.

        Args:
            model_name: Fake model name for identification
            vocab_size: Size of the output distribution
            device: Device the logits are placed on
            multiplier: Weight of the prefix sum in the prediction rule
            offset: Constant added to every prediction
            perturb_every: Period of deliberate disagreements (None disables)
            fail_on_call: 1-based forward call that raises ModelForwardError
        """
        if vocab_size <= NUM_SPECIAL_TOKENS:
            raise ValueError(
                f"vocab_size must exceed {NUM_SPECIAL_TOKENS} special tokens"
            )
        self.logger = logging.getLogger(__name__)
        self._model_name = model_name
        self._vocab_size = vocab_size
        self._device = torch.device(device)
        self.multiplier = multiplier
        self.offset = offset
        self.perturb_every = perturb_every
        self.fail_on_call = fail_on_call

        self._tokens: List[int] = []
        self._prefix_sums: List[int] = []
        self.forward_calls = 0
        self.forward_log: List[Tuple[int, int]] = []

        self.logger.info(
            f"FakeCausalLM initialized: {model_name} (vocab_size={vocab_size}, "
            f"perturb_every={perturb_every})"
        )

    def predict(self, position: int) -> int:
        """Greedy prediction for the token following cache slot position."""
        span = self._vocab_size - NUM_SPECIAL_TOKENS
        state = self.multiplier * self._prefix_sums[position] + position + self.offset
        value = (((state * HASH_MULTIPLIER) % 2**32) >> 16) % span
        if self.perturb_every and (position + 1) % self.perturb_every == 0:
            value = (value + 1) % span
        return NUM_SPECIAL_TOKENS + value

    def forward(self, input_ids: torch.Tensor, start_position: int) -> torch.Tensor:
        """Write the window into the cache and return one-hot logits [n, vocab]."""
        self.forward_calls += 1
        tokens = input_ids.reshape(-1).tolist()
        self.forward_log.append((start_position, len(tokens)))

        if self.fail_on_call is not None and self.forward_calls == self.fail_on_call:
            raise ModelForwardError(
                f"{self._model_name}: injected failure on call {self.forward_calls}",
                model_name=self._model_name,
                start_position=start_position,
            )
        if start_position < 0 or start_position > len(self._tokens):
            raise ModelForwardError(
                f"{self._model_name}: start_position {start_position} leaves a gap "
                f"in a cache of {len(self._tokens)} tokens",
                model_name=self._model_name,
                start_position=start_position,
            )
        if not tokens:
            raise ModelForwardError(
                f"{self._model_name}: empty forward window",
                model_name=self._model_name,
                start_position=start_position,
            )

        # Overwrite from start_position onward
        del self._tokens[start_position:]
        del self._prefix_sums[start_position:]

        predictions = []
        for token in tokens:
            if not 0 <= token < self._vocab_size:
                raise ModelForwardError(
                    f"{self._model_name}: token {token} outside vocabulary",
                    model_name=self._model_name,
                    start_position=start_position,
                )
            previous = self._prefix_sums[-1] if self._prefix_sums else 0
            self._tokens.append(token)
            self._prefix_sums.append(previous + token)
            predictions.append(self.predict(len(self._tokens) - 1))

        index = torch.tensor(predictions, dtype=torch.long, device=self._device)
        return F.one_hot(index, num_classes=self._vocab_size).float()

    def clear_cache(self) -> None:
        self._tokens = []
        self._prefix_sums = []

    @property
    def cached_tokens(self) -> List[int]:
        """Tokens currently held in the cache, stale tail included."""
        return list(self._tokens)

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    @property
    def model_name(self) -> str:
        return self._model_name


class FakeTokenizer(Tokenizer):
    """Byte-level tokenizer: id = NUM_SPECIAL_TOKENS + byte value."""

    def __init__(self, add_bos: bool = True):
        self.add_bos = add_bos

    def encode(self, text: str) -> List[int]:
        if not isinstance(text, str):
            raise TokenizationError(f"Expected str, got {type(text).__name__}")
        ids = [NUM_SPECIAL_TOKENS + b for b in text.encode("utf-8")]
        return [BOS_TOKEN_ID] + ids if self.add_bos else ids

    def decode(self, token_ids: Sequence[int], skip_special: bool = True) -> str:
        data = bytearray()
        pieces: List[str] = []
        for token_id in token_ids:
            token_id = int(token_id)
            if token_id < 0:
                raise TokenizationError(f"Negative token id {token_id}")
            if token_id < NUM_SPECIAL_TOKENS:
                if not skip_special:
                    pieces.append(data.decode("utf-8", errors="replace"))
                    data = bytearray()
                    pieces.append(f"<special_{token_id}>")
                continue
            data.append((token_id - NUM_SPECIAL_TOKENS) % 256)
        pieces.append(data.decode("utf-8", errors="replace"))
        return "".join(pieces)

    @property
    def eos_token_id(self) -> Optional[int]:
        return EOS_TOKEN_ID


def create_fake_pair(
    vocab_size: int = BYTE_VOCAB_SIZE,
    device: str = "cpu",
    draft_perturb_every: Optional[int] = None,
    **kwargs: Any,
) -> Tuple[FakeCausalLM, FakeCausalLM, FakeTokenizer]:
    """
    Create a verifier/draft pair of fake models plus a tokenizer.

    Args:
        vocab_size: Vocabulary size for both models
        device: Device to place logits on
        draft_perturb_every: Disagreement period of the draft (None = identical)
        **kwargs: Extra FakeCausalLM parameters shared by both models

    Returns:
        Tuple of (verifier, draft, tokenizer)
    """
    verifier = FakeCausalLM(
        model_name="fake-verifier", vocab_size=vocab_size, device=device, **kwargs
    )
    draft = FakeCausalLM(
        model_name="fake-draft",
        vocab_size=vocab_size,
        device=device,
        perturb_every=draft_perturb_every,
        **kwargs,
    )
    return verifier, draft, FakeTokenizer()

