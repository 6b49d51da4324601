"""
Hugging Face Model Wrappers for Speculative Decoding

Adapts any transformers causal LM to the CausalModel interface. Each wrapper
owns a DynamicCache; a forward at start_position crops the cache back to that
slot first, so stale entries from rejected draft tokens are overwritten rather
than purged.
"""

import logging
from typing import Any, List, Optional, Sequence, Tuple

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, DynamicCache

from .device import select_device
from .errors import ModelForwardError, TokenizationError
from .interfaces import CausalModel, Tokenizer

_DTYPES = {
    "float32": torch.float32,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}


def resolve_dtype(dtype: Optional[str], device: str) -> torch.dtype:
    """Map a dtype name to torch; "auto" picks float16 on accelerators."""
    if dtype is None or dtype == "auto":
        return torch.float16 if device in ["cuda", "mps"] else torch.float32
    if dtype not in _DTYPES:
        raise ValueError(f"Unknown dtype: {dtype}. Available: {list(_DTYPES)}")
    return _DTYPES[dtype]


class HFCausalLM(CausalModel):
    """Wrapper for a Hugging Face causal LM with an explicitly positioned cache."""

    def __init__(
        self,
        model_name: str,
        device: str = "auto",
        dtype: Optional[str] = "auto",
        model: Any = None,
    ):
        """
        Initialize the Hugging Face wrapper.

        Args:
            model_name: Hugging Face model identifier
            device: Device to run on ("auto", "cpu", "mps", "cuda")
            dtype: Weight dtype name ("auto", "float32", "float16", "bfloat16")
            model: Already loaded model (skips from_pretrained)
        """
        self.logger = logging.getLogger(__name__)
        self._model_name = model_name
        self._device = select_device(device)
        self._torch_dtype = resolve_dtype(dtype, self._device)
        self._cache: Optional[DynamicCache] = None

        if model is None:
            model = self._load_model()
        self._model = model
        self._model.eval()

    def _load_model(self) -> Any:
        """Load the model weights onto the selected device."""
        try:
            self.logger.info(f"Loading HF model: {self._model_name}")
            model = AutoModelForCausalLM.from_pretrained(
                self._model_name,
                torch_dtype=self._torch_dtype,
                low_cpu_mem_usage=True,
            )
            model = model.to(self._device)
            self.logger.info(
                f"HF model loaded on device: {self._device} ({self._torch_dtype})"
            )
            return model
        except Exception as e:
            self.logger.error(f"Failed to load HF model: {e}")
            raise

    def forward(self, input_ids: torch.Tensor, start_position: int) -> torch.Tensor:
        """Run the model over input_ids written at cache slots from start_position."""
        cached = self._cache.get_seq_length() if self._cache is not None else 0
        if start_position > cached:
            raise ModelForwardError(
                f"{self._model_name}: start_position {start_position} leaves a gap "
                f"in a cache of {cached} tokens",
                model_name=self._model_name,
                start_position=start_position,
            )

        if start_position == 0 or self._cache is None:
            self._cache = DynamicCache()
        elif start_position < cached:
            self._cache.crop(start_position)

        if input_ids.dim() == 1:
            input_ids = input_ids.unsqueeze(0)
        seq_len = input_ids.shape[1]
        position_ids = torch.arange(
            start_position, start_position + seq_len, device=input_ids.device
        ).unsqueeze(0)

        try:
            with torch.no_grad():
                outputs = self._model(
                    input_ids=input_ids,
                    position_ids=position_ids,
                    past_key_values=self._cache,
                    use_cache=True,
                    return_dict=True,
                )
        except (RuntimeError, ValueError, IndexError) as e:
            self.logger.error(f"Forward failed at position {start_position}: {e}")
            raise ModelForwardError(
                f"{self._model_name}: forward failed: {e}",
                model_name=self._model_name,
                start_position=start_position,
            ) from e

        self._cache = outputs.past_key_values
        return outputs.logits[0]

    def clear_cache(self) -> None:
        self._cache = None

    @property
    def device(self) -> torch.device:
        return torch.device(self._device)

    @property
    def vocab_size(self) -> int:
        return int(self._model.config.vocab_size)

    @property
    def model_name(self) -> str:
        return self._model_name


class HFTokenizer(Tokenizer):
    """Wrapper around a Hugging Face tokenizer."""

    def __init__(self, model_name: str, tokenizer: Any = None):
        self.logger = logging.getLogger(__name__)
        self.model_name = model_name
        if tokenizer is None:
            try:
                tokenizer = AutoTokenizer.from_pretrained(model_name)
            except Exception as e:
                self.logger.error(f"Failed to load tokenizer {model_name}: {e}")
                raise TokenizationError(
                    f"Failed to load tokenizer {model_name}: {e}"
                ) from e
        self._tokenizer = tokenizer

    def encode(self, text: str) -> List[int]:
        try:
            return list(self._tokenizer.encode(text, add_special_tokens=True))
        except Exception as e:
            raise TokenizationError(f"Failed to encode text: {e}") from e

    def decode(self, token_ids: Sequence[int], skip_special: bool = True) -> str:
        try:
            return self._tokenizer.decode(
                list(token_ids), skip_special_tokens=skip_special
            )
        except Exception as e:
            raise TokenizationError(f"Failed to decode tokens: {e}") from e

    @property
    def eos_token_id(self) -> Optional[int]:
        return self._tokenizer.eos_token_id


def create_hf_models(
    verifier_model: str,
    draft_model: str,
    device: str = "auto",
    dtype: Optional[str] = "auto",
) -> Tuple[HFCausalLM, HFCausalLM, HFTokenizer]:
    """
    Load a verifier/draft pair and the verifier's tokenizer.

    Both models must share a vocabulary: token ids are compared directly.

    Returns:
        Tuple of (verifier, draft, tokenizer)
    """
    tokenizer = HFTokenizer(verifier_model)
    verifier = HFCausalLM(verifier_model, device=device, dtype=dtype)
    draft = HFCausalLM(draft_model, device=device, dtype=dtype)
    return verifier, draft, tokenizer
