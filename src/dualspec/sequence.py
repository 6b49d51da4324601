"""
Sequence State

Append-only token history shared by both model cursors, plus the "printed"
watermark used for incremental text rendering.
"""

from typing import Iterable, List

from .interfaces import Tokenizer

# Emitted by byte-level decoders for a grapheme whose bytes are not all present yet
REPLACEMENT_CHAR = "\ufffd"


class SequenceState:
    """Prompt tokens followed by committed generated tokens."""

    def __init__(self, prompt_tokens: Iterable[int]):
        self._tokens: List[int] = [int(t) for t in prompt_tokens]
        self._prompt_length = len(self._tokens)
        self.printed = self._prompt_length

    def append(self, tokens: Iterable[int]) -> None:
        """Commit tokens to the end of the sequence."""
        self._tokens.extend(int(t) for t in tokens)

    @property
    def tokens(self) -> List[int]:
        """Copy of the full sequence (prompt + generated)."""
        return list(self._tokens)

    @property
    def generated_tokens(self) -> List[int]:
        return self._tokens[self._prompt_length :]

    @property
    def prompt_length(self) -> int:
        return self._prompt_length

    @property
    def num_generated(self) -> int:
        return len(self._tokens) - self._prompt_length

    def take_printable(self, tokenizer: Tokenizer) -> str:
        """
        Decode tokens committed since the last call.

        The watermark only moves when the decoded text is complete. A trailing
        replacement character means a multi-token grapheme is still partial,
        so those tokens stay pending until more arrive.

        Args:
            tokenizer: Tokenizer used for decoding

        Returns:
            Newly printable text, or "" if nothing is ready
        """
        if self.printed >= len(self._tokens):
            return ""

        text = tokenizer.decode(self._tokens[self.printed :], skip_special=True)
        if not text or text.endswith(REPLACEMENT_CHAR):
            return ""

        self.printed = len(self._tokens)
        return text
