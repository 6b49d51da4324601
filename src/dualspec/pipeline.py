"""
Speculative Decoding Pipeline

Orchestrates the speculative decoding loop:
1. Prefill: run the prompt through both models and set up the two cursors
2. Draft: the draft model proposes up to K tokens without host syncs
3. Verify: one batched verifier pass over [seed, d_1 .. d_K]
4. Compare: commit the matching prefix plus a bonus or replacement token
5. Resync: realign both cursors and re-prime the draft cache
6. Repeat until max_tokens, a stop token, cancellation, or timeout
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import psutil
import torch

from .acceptance import AcceptanceComparator, FullAccept
from .config import load_config
from .controllers import KController, create_controller
from .deterministic import ensure_deterministic, set_deterministic_mode
from .device import DeviceSync
from .draft import DraftGenerator
from .errors import ConfigError, ModelForwardError, TokenizationError
from .fake_lm import create_fake_pair
from .interfaces import CausalModel, Tokenizer, as_2d_logits
from .resync import ModelContext, Resync
from .sequence import SequenceState
from .verifier import VerifierBatch

logger = logging.getLogger(__name__)


def compute_step_k(current_k: int, remaining: int) -> int:
    """Window size for the next iteration; never drafts past the token budget."""
    return max(1, min(current_k, remaining))


def clip_commit(
    tokens: Sequence[int], remaining: int, stop_token_ids: Sequence[int]
) -> Tuple[List[int], bool]:
    """
    Trim an iteration's tokens to the budget and the first stop token.

    Returns:
        Tuple of (tokens to commit, whether a stop token was committed)
    """
    clipped = list(tokens[:remaining])
    for i, token in enumerate(clipped):
        if token in stop_token_ids:
            return clipped[: i + 1], True
    return clipped, False


class SpeculativePipeline:
    """Greedy speculative decoding with a draft model and a verifier model."""

    def __init__(
        self,
        verifier_lm: CausalModel,
        draft_lm: CausalModel,
        tokenizer: Tokenizer,
        controller: str = "adaptive",
        controller_params: Optional[Dict[str, Any]] = None,
        max_new_tokens: int = 64,
        stop_token_ids: Optional[Sequence[int]] = None,
        device_sync: Optional[DeviceSync] = None,
    ):
        """
        Initialize the speculative decoding pipeline.

        Args:
            verifier_lm: Large authoritative model
            draft_lm: Small proposal model sharing the verifier's vocabulary
            tokenizer: Tokenizer for prompt encoding and text rendering
            controller: K controller type ("fixed", "adaptive")
            controller_params: Parameters for the K controller
                (initial_k, min_k, max_k, adjust_window, high/low_threshold)
            max_new_tokens: Default token budget for generate()
            stop_token_ids: Tokens that end generation (default: tokenizer EOS)
            device_sync: Barrier primitive (a fresh DeviceSync if None)

        Raises:
            ConfigError: If the controller parameters are invalid
        """
        self.logger = logging.getLogger(__name__)
        self.verifier_lm = verifier_lm
        self.draft_lm = draft_lm
        self.tokenizer = tokenizer
        self.controller_type = controller
        self.controller_params = dict(controller_params or {})
        self.max_new_tokens = max_new_tokens
        self.stop_token_ids = stop_token_ids
        self.device_sync = device_sync or DeviceSync()
        self.config: Dict[str, Any] = {}
        self.metrics: Dict[str, Any] = {}

        # Validate controller settings up front; a fresh one is built per session
        self.controller: KController = self._create_controller()

        self.drafter = DraftGenerator(draft_lm)
        self.verifier_batch = VerifierBatch(verifier_lm)
        self.comparator = AcceptanceComparator()
        self.resync = Resync(draft_lm)

        self._check_compatibility()

    @classmethod
    def from_config(
        cls, config_path: Optional[str] = None, **overrides: Any
    ) -> "SpeculativePipeline":
        """
        Build a pipeline (models included) from YAML config plus overrides.

        Args:
            config_path: Path to YAML configuration file
            **overrides: Config keys that take precedence over the file

        Returns:
            Configured SpeculativePipeline
        """
        config = load_config(config_path, overrides)

        if config.get("deterministic"):
            seed = set_deterministic_mode(config.get("seed"))
            logger.info(f"Deterministic mode enabled (seed={seed})")
        elif ensure_deterministic(config.get("seed")):
            logger.info("Deterministic mode enabled by DUALSPEC_DETERMINISTIC")
        elif config.get("seed") is not None:
            torch.manual_seed(config["seed"])

        verifier_lm, draft_lm, tokenizer = cls._create_models(config)

        pipeline = cls(
            verifier_lm=verifier_lm,
            draft_lm=draft_lm,
            tokenizer=tokenizer,
            controller=config["controller"],
            controller_params={
                "initial_k": config["initial_k"],
                "k": config["initial_k"],
                "min_k": config["min_k"],
                "max_k": config["max_k"],
                "adjust_window": config["adjust_window"],
                "high_threshold": config["high_threshold"],
                "low_threshold": config["low_threshold"],
            },
            max_new_tokens=config["max_new_tokens"],
            stop_token_ids=config.get("stop_token_ids"),
        )
        pipeline.config = config
        pipeline._log_startup_config()
        return pipeline

    @staticmethod
    def _create_models(
        config: Dict[str, Any],
    ) -> Tuple[CausalModel, CausalModel, Tokenizer]:
        """Create verifier, draft and tokenizer based on implementation."""
        if config["implementation"] == "fake":
            fake = config.get("fake", {})
            return create_fake_pair(
                vocab_size=fake.get("vocab_size", 260),
                device="cpu",
                draft_perturb_every=fake.get("draft_perturb_every"),
                multiplier=fake.get("multiplier", 31),
                offset=fake.get("offset", 7),
            )
        elif config["implementation"] == "hf":
            # Deferred so the fake path never imports transformers
            from .hf_wrappers import create_hf_models

            return create_hf_models(
                config["verifier_model"],
                config["draft_model"],
                device=config["device"],
                dtype=config.get("dtype", "auto"),
            )
        else:
            raise ValueError(f"Unknown implementation: {config['implementation']}")

    def _create_controller(self) -> KController:
        """Create K controller."""
        return create_controller(self.controller_type, **self.controller_params)

    def _check_compatibility(self) -> None:
        """Check that draft and verifier predict over the same vocabulary."""
        if self.verifier_lm.vocab_size != self.draft_lm.vocab_size:
            self.logger.warning(
                f"Vocabulary size mismatch: verifier={self.verifier_lm.vocab_size}, "
                f"draft={self.draft_lm.vocab_size}"
            )
            self.logger.warning(
                "Token ids are compared directly; mismatched vocabularies "
                "will reduce acceptance rates."
            )

    def _log_startup_config(self) -> None:
        """Log startup configuration summary."""
        self.logger.info(
            f"Startup config: verifier={self.verifier_lm.model_name} "
            f"({self.verifier_lm.device}), draft={self.draft_lm.model_name} "
            f"({self.draft_lm.device}), controller={self.controller.get_info()}, "
            f"max_tokens={self.max_new_tokens}"
        )

    def _resolve_stop_tokens(
        self, stop_token_ids: Optional[Sequence[int]]
    ) -> List[int]:
        if stop_token_ids is None:
            stop_token_ids = self.stop_token_ids
        if stop_token_ids is None:
            eos = self.tokenizer.eos_token_id
            return [eos] if eos is not None else []
        return [int(t) for t in stop_token_ids]

    def _prefill(
        self,
        prompt_ids: List[int],
        draft_ctx: ModelContext,
        verifier_ctx: ModelContext,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Run the prompt through both models.

        The draft cursor ends past the prompt with its first prediction pending.
        The verifier cursor ends on the last prompt token, which seeds the
        first verification batch and is re-forwarded there.

        Returns:
            Tuple of (draft pending token, verifier seed token), both [1, 1]
        """
        self.draft_lm.clear_cache()
        self.verifier_lm.clear_cache()

        draft_input = torch.tensor(
            [prompt_ids], dtype=torch.long, device=self.draft_lm.device
        )
        draft_logits = as_2d_logits(self.draft_lm.forward(draft_input, 0))
        draft_ctx.advance(len(prompt_ids))
        draft_pending = torch.argmax(draft_logits[-1], dim=-1).view(1, 1)

        verifier_input = draft_input.to(self.verifier_lm.device)
        self.verifier_lm.forward(verifier_input, 0)
        verifier_ctx.advance(len(prompt_ids) - 1)
        verifier_seed = verifier_input[:, -1:]

        self.device_sync.barrier(self.draft_lm.device, self.verifier_lm.device)
        return draft_pending, verifier_seed

    def generate(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        stop_token_ids: Optional[Sequence[int]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
        timeout_s: Optional[float] = None,
        on_text: Optional[Callable[[str], None]] = None,
    ) -> Dict[str, Any]:
        """
        Generate text using speculative decoding.

        Args:
            prompt: Input prompt text
            max_tokens: Token budget (None uses the pipeline default; 0 commits nothing)
            stop_token_ids: Tokens that end generation once committed
            should_cancel: Polled at iteration boundaries; True stops the session
            timeout_s: Wall-clock limit checked at iteration boundaries
            on_text: Called with newly printable text after each iteration

        Returns:
            Dictionary containing generated tokens, text and statistics

        Raises:
            ConfigError: If max_tokens is negative
            TokenizationError: If the prompt cannot be encoded
            ModelForwardError: On any forward failure; ``partial_result`` holds
                the prefix committed before the failure
        """
        start_time = time.time()
        if max_tokens is None:
            max_tokens = self.max_new_tokens
        if max_tokens < 0:
            raise ConfigError(f"max_tokens must be >= 0, got {max_tokens}")
        stop_ids = self._resolve_stop_tokens(stop_token_ids)

        try:
            prompt_ids = self.tokenizer.encode(prompt)
        except TokenizationError as e:
            self.logger.error(f"Failed to encode prompt: {e}")
            raise
        if not prompt_ids:
            raise TokenizationError("Prompt encoded to zero tokens")

        self.controller = self._create_controller()
        self.device_sync.reset()
        sequence = SequenceState(prompt_ids)
        draft_ctx = ModelContext("draft")
        verifier_ctx = ModelContext("verifier")
        render = on_text is not None

        self.metrics = {
            "total_proposed": 0,
            "total_accepted": 0,
            "total_bonus": 0,
            "total_positions_advanced": 0,
            "draft_time_ms": 0.0,
            "verify_time_ms": 0.0,
            "resync_time_ms": 0.0,
            "draft_forward_calls": 0,
            "verifier_forward_calls": 0,
            "k_history": [],
            "iterations": [],
        }
        stop_reason = "max_tokens"

        self.logger.info(
            f'Starting speculative decoding: prompt="{prompt[:50]}...", '
            f"prompt_tokens={len(prompt_ids)}, max_tokens={max_tokens}"
        )

        if max_tokens == 0:
            return self._build_result(
                sequence, stop_reason, start_time, draft_ctx, verifier_ctx
            )

        try:
            draft_pending, verifier_seed = self._prefill(
                prompt_ids, draft_ctx, verifier_ctx
            )
            self.metrics["draft_forward_calls"] += 1
            self.metrics["verifier_forward_calls"] += 1

            step = 0
            while sequence.num_generated < max_tokens:
                if should_cancel is not None and should_cancel():
                    stop_reason = "cancelled"
                    self.logger.info("Generation cancelled")
                    break
                if timeout_s is not None and time.time() - start_time > timeout_s:
                    stop_reason = "timeout"
                    self.logger.info(f"Generation timed out after {timeout_s}s")
                    break

                step += 1
                remaining = max_tokens - sequence.num_generated
                step_k = compute_step_k(self.controller.current_k, remaining)

                # Step 1: draft (no host sync inside)
                draft_start = time.time()
                window = self.drafter.propose(step_k, draft_pending, draft_ctx.position)
                draft_ctx.advance(window.forward_calls)
                self.metrics["draft_forward_calls"] += window.forward_calls
                draft_time_ms = (time.time() - draft_start) * 1000

                # Step 2: batched verification, then the first barrier
                verify_start = time.time()
                result = self.verifier_batch.verify(
                    verifier_seed, window, verifier_ctx.position
                )
                self.metrics["verifier_forward_calls"] += 1
                self.device_sync.barrier(self.draft_lm.device, self.verifier_lm.device)
                draft_tokens = window.to_host()
                result.materialize()
                verify_time_ms = (time.time() - verify_start) * 1000

                # Step 3: compare and commit
                outcome = self.comparator.compare(
                    draft_tokens, result.predictions, result.bonus_token
                )
                committed, hit_stop = clip_commit(
                    outcome.committed_tokens(draft_tokens), remaining, stop_ids
                )
                sequence.append(committed)

                is_full = isinstance(outcome, FullAccept)
                self.metrics["total_proposed"] += step_k
                self.metrics["total_accepted"] += outcome.accepted_count
                self.metrics["total_positions_advanced"] += len(committed)
                if is_full and len(committed) == outcome.positions_advanced:
                    self.metrics["total_bonus"] += 1
                self.metrics["draft_time_ms"] += draft_time_ms
                self.metrics["verify_time_ms"] += verify_time_ms
                self.metrics["k_history"].append(step_k)
                self.metrics["iterations"].append(
                    {
                        "step": step,
                        "step_k": step_k,
                        "outcome": "full_accept" if is_full else "partial_accept",
                        "accepted_count": outcome.accepted_count,
                        "positions_advanced": outcome.positions_advanced,
                        "committed": len(committed),
                        "current_k": self.controller.current_k,
                    }
                )

                self.logger.debug(
                    f"Step {step}: K={step_k}, accepted={outcome.accepted_count}, "
                    f"advanced={outcome.positions_advanced}, "
                    f"t_draft={draft_time_ms:.1f}ms, t_verify={verify_time_ms:.1f}ms, "
                    f"total={sequence.num_generated}/{max_tokens}"
                )

                self.controller.record(outcome.accepted_count, step_k)

                if render:
                    render = self._emit_text(sequence, on_text)

                if hit_stop:
                    stop_reason = "stop_token"
                    self.logger.info("Stop token generated, stopping")
                    break
                if sequence.num_generated >= max_tokens:
                    break

                # Step 4: resync cursors, then the second barrier
                resync_start = time.time()
                resync = self.resync.apply(
                    outcome, window, result, draft_ctx, verifier_ctx
                )
                self.metrics["draft_forward_calls"] += resync.draft_forward_calls
                self.device_sync.barrier(self.draft_lm.device, self.verifier_lm.device)
                draft_pending = resync.draft_pending
                verifier_seed = resync.verifier_seed
                self.metrics["resync_time_ms"] += (time.time() - resync_start) * 1000

        except ModelForwardError as e:
            self.logger.error(f"Speculative decoding failed: {e}")
            e.partial_result = self._build_result(
                sequence, "error", start_time, draft_ctx, verifier_ctx
            )
            raise

        result_dict = self._build_result(
            sequence, stop_reason, start_time, draft_ctx, verifier_ctx
        )
        self.logger.info(
            f"Speculative decoding completed: {result_dict['num_generated']} tokens "
            f"in {result_dict['latency_ms']:.2f}ms "
            f"({result_dict['tokens_per_sec']:.2f} tokens/sec, "
            f"acceptance_rate={result_dict['acceptance_rate']:.3f}, "
            f"bonus={result_dict['bonus_tokens']})"
        )
        return result_dict

    def _emit_text(
        self, sequence: SequenceState, on_text: Callable[[str], None]
    ) -> bool:
        """Send newly printable text to the callback; False disables rendering."""
        try:
            text = sequence.take_printable(self.tokenizer)
        except TokenizationError as e:
            self.logger.warning(f"Incremental decode failed, rendering stopped: {e}")
            return False
        if text:
            on_text(text)
        return True

    def _build_result(
        self,
        sequence: SequenceState,
        stop_reason: str,
        start_time: float,
        draft_ctx: ModelContext,
        verifier_ctx: ModelContext,
    ) -> Dict[str, Any]:
        """Assemble the final token sequence and non-authoritative statistics."""
        total_time_ms = (time.time() - start_time) * 1000
        generated = sequence.generated_tokens

        try:
            text = self.tokenizer.decode(generated, skip_special=True)
        except TokenizationError as e:
            self.logger.warning(f"Failed to decode generated tokens: {e}")
            text = ""

        proposed = self.metrics["total_proposed"]
        acceptance_rate = (
            self.metrics["total_accepted"] / proposed if proposed > 0 else 0.0
        )
        tokens_per_sec = (
            len(generated) / (total_time_ms / 1000) if total_time_ms > 0 else 0.0
        )
        mem_rss_mb = psutil.Process().memory_info().rss / 1024 / 1024

        return {
            "text": text,
            "generated_tokens": generated,
            "tokens": sequence.tokens,
            "prompt_tokens": sequence.prompt_length,
            "num_generated": len(generated),
            "stop_reason": stop_reason,
            "iterations": list(self.metrics["iterations"]),
            "steps": len(self.metrics["iterations"]),
            "proposed": proposed,
            "accepted": self.metrics["total_accepted"],
            "acceptance_rate": acceptance_rate,
            "bonus_tokens": self.metrics["total_bonus"],
            "positions_advanced_total": self.metrics["total_positions_advanced"],
            "k_history": list(self.metrics["k_history"]),
            "draft_time_ms": self.metrics["draft_time_ms"],
            "verify_time_ms": self.metrics["verify_time_ms"],
            "resync_time_ms": self.metrics["resync_time_ms"],
            "latency_ms": total_time_ms,
            "tokens_per_sec": tokens_per_sec,
            "draft_forward_calls": self.metrics["draft_forward_calls"],
            "verifier_forward_calls": self.metrics["verifier_forward_calls"],
            "sync_barriers": self.device_sync.barrier_count,
            "draft_position": draft_ctx.position,
            "verifier_position": verifier_ctx.position,
            "mem_rss_mb": mem_rss_mb,
            "controller": self.controller.get_info(),
            "verifier_model": self.verifier_lm.model_name,
            "draft_model": self.draft_lm.model_name,
            "device": str(self.verifier_lm.device),
        }
