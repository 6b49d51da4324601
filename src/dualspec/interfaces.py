"""
Model and Tokenizer Interfaces for Speculative Decoding

Defines the narrow capability interfaces the decoding engine depends on. The
engine never looks at model architecture: anything that can run a causal
forward pass over a token window at a given cache position, and drop its
cache, can serve as either the draft or the verifier.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import torch


class CausalModel(ABC):
    """Abstract base class for causal language models with a positional cache."""

    @abstractmethod
    def forward(self, input_ids: torch.Tensor, start_position: int) -> torch.Tensor:
        """
        Run the model over a window of tokens.

        The tokens are written into the model's cache at slots
        ``start_position .. start_position + n - 1``. Anything the cache held
        at or beyond ``start_position`` is superseded.

        Args:
            input_ids: Token IDs [1, n] on the model's device
            start_position: Cache slot of the first token in the window

        Returns:
            Logits [n, vocab_size] (a [vocab_size] tensor is accepted for n == 1)

        Raises:
            ModelForwardError: If the forward pass fails
        """
        pass

    @abstractmethod
    def clear_cache(self) -> None:
        """Drop all cached state so the next forward starts at position 0."""
        pass

    @property
    @abstractmethod
    def device(self) -> torch.device:
        """Get the device this model is running on."""
        pass

    @property
    @abstractmethod
    def vocab_size(self) -> int:
        """Get the size of the output distribution."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Get the model name/identifier."""
        pass


class Tokenizer(ABC):
    """Abstract base class for tokenizers used at session boundaries."""

    @abstractmethod
    def encode(self, text: str) -> List[int]:
        """
        Encode text to token IDs.

        Raises:
            TokenizationError: If the text cannot be encoded
        """
        pass

    @abstractmethod
    def decode(self, token_ids: Sequence[int], skip_special: bool = True) -> str:
        """
        Decode token IDs to text.

        Raises:
            TokenizationError: If the IDs cannot be decoded
        """
        pass

    @property
    @abstractmethod
    def eos_token_id(self) -> Optional[int]:
        """Get the end-of-sequence token ID, if the vocabulary has one."""
        pass


def as_2d_logits(logits: torch.Tensor) -> torch.Tensor:
    """Normalize model output to [n, vocab_size]."""
    if logits.dim() == 1:
        return logits.unsqueeze(0)
    if logits.dim() == 3:
        # [batch=1, n, vocab]
        return logits.squeeze(0)
    return logits
