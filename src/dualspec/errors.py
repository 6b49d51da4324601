"""
Exception Types for Speculative Decoding

Every failure the engine surfaces derives from SpecDecodeError so callers can
catch the whole family at the session boundary.
"""

from typing import Any, Dict, Optional


class SpecDecodeError(Exception):
    """Base exception for speculative decoding failures."""


class ModelForwardError(SpecDecodeError):
    """A model forward pass (or cache operation) failed on the device."""

    def __init__(
        self,
        message: str,
        model_name: Optional[str] = None,
        start_position: Optional[int] = None,
    ):
        super().__init__(message)
        self.model_name = model_name
        self.start_position = start_position
        # Filled in by the pipeline with whatever was committed before the failure
        self.partial_result: Optional[Dict[str, Any]] = None


class TokenizationError(SpecDecodeError):
    """The tokenizer could not encode or decode the given input."""


class ConfigError(SpecDecodeError, ValueError):
    """Invalid configuration, rejected at construction time."""
