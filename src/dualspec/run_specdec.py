"""
CLI Entrypoint for Speculative Decoding

Command-line interface for running speculative decoding with JSON output.
Supports configuration files and various generation parameters.

Usage:
    python -m dualspec.run_specdec --prompt "Explain KV cache simply." \\
        --max-tokens 64 --verbose
    python -m dualspec.run_specdec --config configs/specdec.yaml \\
        --prompt "Test" --impl hf --stream
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .errors import ModelForwardError
from .pipeline import SpeculativePipeline


def setup_logging(verbose: bool = False) -> None:
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def write_stream(text: str) -> None:
    """Write streamed text to stdout immediately."""
    sys.stdout.write(text)
    sys.stdout.flush()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Greedy Speculative Decoding CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m dualspec.run_specdec --prompt "Hello world" --max-tokens 32
  python -m dualspec.run_specdec --prompt "Hello world" --fixed-k 4
  python -m dualspec.run_specdec --config configs/specdec.yaml \\
      --prompt "Test" --impl hf --stream --verbose
        """,
    )

    # Required arguments
    parser.add_argument("--prompt", type=str, required=True, help="Input prompt text")

    # Optional arguments
    parser.add_argument(
        "--max-tokens", type=int, help="Maximum tokens to generate (overrides config)"
    )
    parser.add_argument("--config", type=str, help="Path to YAML configuration file")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--stream",
        action="store_true",
        default=None,
        help="Print text to stdout as it is committed",
    )

    # Model parameters
    parser.add_argument(
        "--impl",
        type=str,
        choices=["fake", "hf"],
        help="Implementation type: fake for testing, hf for real models",
    )
    parser.add_argument(
        "--verifier-model", type=str, help="Verifier model name (overrides config)"
    )
    parser.add_argument(
        "--draft-model", type=str, help="Draft model name (overrides config)"
    )
    parser.add_argument(
        "--device",
        type=str,
        choices=["auto", "cpu", "mps", "cuda"],
        help="Device to run on (overrides config)",
    )
    parser.add_argument(
        "--dtype",
        type=str,
        choices=["auto", "float32", "float16", "bfloat16"],
        help="Model weight dtype (overrides config)",
    )
    parser.add_argument(
        "--seed", type=int, help="Random seed for reproducibility (overrides config)"
    )
    parser.add_argument(
        "--deterministic",
        action="store_true",
        default=None,
        help="Enable deterministic backend settings",
    )
    parser.add_argument(
        "--stop-token-id",
        type=int,
        action="append",
        dest="stop_token_ids",
        help="Token id that ends generation (repeatable; default: tokenizer EOS)",
    )

    # Window controller arguments
    parser.add_argument(
        "--fixed-k",
        type=int,
        help="Disable adaptation and draft exactly this many tokens per step",
    )
    parser.add_argument("--initial-k", type=int, help="Initial window size (default: 3)")
    parser.add_argument("--min-k", type=int, help="Minimum window size (default: 1)")
    parser.add_argument("--max-k", type=int, help="Maximum window size (default: 8)")
    parser.add_argument(
        "--adjust-window",
        type=int,
        help="Iterations averaged per adjustment check (default: 12)",
    )
    parser.add_argument(
        "--high-threshold",
        type=float,
        help="Mean acceptance above which K grows (default: 0.6)",
    )
    parser.add_argument(
        "--low-threshold",
        type=float,
        help="Mean acceptance below which K shrinks (default: 0.4)",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entrypoint."""
    args = parse_args(argv)

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    overrides = {
        "implementation": args.impl,
        "verifier_model": args.verifier_model,
        "draft_model": args.draft_model,
        "device": args.device,
        "dtype": args.dtype,
        "seed": args.seed,
        "deterministic": args.deterministic,
        "max_new_tokens": args.max_tokens,
        "initial_k": args.initial_k,
        "min_k": args.min_k,
        "max_k": args.max_k,
        "adjust_window": args.adjust_window,
        "high_threshold": args.high_threshold,
        "low_threshold": args.low_threshold,
        "stop_token_ids": args.stop_token_ids,
        "stream": args.stream,
    }
    if args.fixed_k is not None:
        overrides["controller"] = "fixed"
        overrides["initial_k"] = args.fixed_k

    try:
        logger.info("Initializing speculative decoding pipeline...")
        pipeline = SpeculativePipeline.from_config(args.config, **overrides)

        on_text = write_stream if pipeline.config.get("stream") else None
        if on_text is not None:
            on_text(args.prompt)

        logger.info(f"Generating text for prompt: '{args.prompt[:50]}...'")
        result = pipeline.generate(prompt=args.prompt, on_text=on_text)

        if on_text is not None:
            sys.stdout.write("\n")

        # Print JSON result to stdout
        output = {
            "latency_ms": result["latency_ms"],
            "num_generated": result["num_generated"],
            "proposed": result["proposed"],
            "accepted": result["accepted"],
            "acceptance_rate": result["acceptance_rate"],
            "bonus_tokens": result["bonus_tokens"],
            "steps": result["steps"],
            "tokens_per_sec": result["tokens_per_sec"],
            "stop_reason": result["stop_reason"],
            "final_k": result["controller"].get(
                "current_k", result["controller"].get("k")
            ),
            "text": result["text"],
            "verifier_model": result["verifier_model"],
            "draft_model": result["draft_model"],
            "device": result["device"],
        }

        print(json.dumps(output, indent=None))

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)
    except ModelForwardError as e:
        if e.partial_result is not None:
            logger.error(
                f"Error: {e} (committed {e.partial_result['num_generated']} tokens)"
            )
        else:
            logger.error(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
