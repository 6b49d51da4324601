"""
Greedy Speculative Decoding Package

This package accelerates token generation from a large causal language model
using a small draft model to propose tokens and the large verifier model to
check them in a single batched pass.

Key Components:
- draft: DraftGenerator proposes up to K tokens without host syncs
- verifier: VerifierBatch checks a whole window in one forward
- acceptance: first-mismatch accept/correct rule
- resync: realigns both model cursors after every decision
- controllers: adaptive window size (K) from the acceptance ratio
- pipeline: orchestrates the prefill/draft/verify/compare/resync loop
- run_specdec: CLI entrypoint
"""

from .acceptance import AcceptanceComparator, FullAccept, PartialAccept
from .controllers import FixedKController, WindowController, create_controller
from .draft import DraftGenerator, DraftWindow
from .errors import ConfigError, ModelForwardError, SpecDecodeError, TokenizationError
from .interfaces import CausalModel, Tokenizer
from .pipeline import SpeculativePipeline
from .resync import ModelContext, Resync
from .sequence import SequenceState
from .verifier import VerifierBatch, VerifierResult

__version__ = "0.1.0"

__all__ = [
    "AcceptanceComparator",
    "CausalModel",
    "ConfigError",
    "DraftGenerator",
    "DraftWindow",
    "FixedKController",
    "FullAccept",
    "ModelContext",
    "ModelForwardError",
    "PartialAccept",
    "Resync",
    "SequenceState",
    "SpecDecodeError",
    "SpeculativePipeline",
    "TokenizationError",
    "Tokenizer",
    "VerifierBatch",
    "VerifierResult",
    "WindowController",
    "create_controller",
]
