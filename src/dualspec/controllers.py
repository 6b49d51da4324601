"""
K Controllers for Speculative Decoding

This module implements strategies for controlling the speculative window size
(K), the number of draft tokens proposed per verifier pass.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)


class KController(ABC):
    """Abstract base class for K controllers."""

    @property
    @abstractmethod
    def current_k(self) -> int:
        """Window size to use for the next iteration."""
        pass

    @abstractmethod
    def record(self, accepted_count: int, step_k: int) -> Optional[int]:
        """
        Feed back the outcome of one iteration.

        Args:
            accepted_count: Draft tokens accepted in the iteration
            step_k: Window size actually drafted in the iteration

        Returns:
            The new K if it changed, otherwise None
        """
        pass

    @abstractmethod
    def get_info(self) -> Dict[str, Any]:
        """Get controller information for logging."""
        pass


class FixedKController(KController):
    """Fixed K controller that always drafts the same number of tokens."""

    def __init__(self, k: int = 3):
        """
        Initialize fixed K controller.

        Args:
            k: Fixed number of draft tokens per iteration
        """
        if k < 1:
            raise ConfigError(f"k must be >= 1, got {k}")
        self.k = k
        self.name = "fixed_k"

    @property
    def current_k(self) -> int:
        return self.k

    def record(self, accepted_count: int, step_k: int) -> Optional[int]:
        """Fixed controller ignores feedback."""
        return None

    def get_info(self) -> Dict[str, Any]:
        """Get controller information."""
        return {
            "controller": self.name,
            "k": self.k,
        }


class WindowController(KController):
    """
    Adaptive K controller driven by a rolling acceptance ratio.

    Each iteration contributes accepted_count / step_k. Once adjust_window
    ratios have accumulated, their mean is compared to the thresholds: above
    high_threshold K grows by one, below low_threshold it shrinks by one. The
    accumulator is cleared after every check.
    """

    def __init__(
        self,
        initial_k: int = 3,
        min_k: int = 1,
        max_k: int = 8,
        adjust_window: int = 12,
        high_threshold: float = 0.6,
        low_threshold: float = 0.4,
    ):
        """
        Initialize adaptive K controller.

        Args:
            initial_k: Initial K value
            min_k: Minimum K value
            max_k: Maximum K value
            adjust_window: Iterations averaged before each adjustment check
            high_threshold: Mean acceptance above which K is increased
            low_threshold: Mean acceptance below which K is decreased

        Raises:
            ConfigError: If the bounds or thresholds are inconsistent
        """
        if min_k < 1:
            raise ConfigError(f"min_k must be >= 1, got {min_k}")
        if min_k > max_k:
            raise ConfigError(f"min_k ({min_k}) must not exceed max_k ({max_k})")
        if not min_k <= initial_k <= max_k:
            raise ConfigError(
                f"initial_k ({initial_k}) must lie within [{min_k}, {max_k}]"
            )
        if adjust_window < 1:
            raise ConfigError(f"adjust_window must be >= 1, got {adjust_window}")
        if not 0.0 <= low_threshold <= high_threshold <= 1.0:
            raise ConfigError(
                f"Thresholds must satisfy 0 <= low ({low_threshold}) "
                f"<= high ({high_threshold}) <= 1"
            )

        self.initial_k = initial_k
        self.min_k = min_k
        self.max_k = max_k
        self.adjust_window = adjust_window
        self.high_threshold = high_threshold
        self.low_threshold = low_threshold
        self.name = "adaptive_k"

        # State tracking
        self._current_k = initial_k
        self.acc_sum = 0.0
        self.acc_count = 0
        self.last_average: Optional[float] = None
        self.k_history: List[int] = []

    @property
    def current_k(self) -> int:
        return self._current_k

    def record(self, accepted_count: int, step_k: int) -> Optional[int]:
        """Accumulate one acceptance ratio and adjust K at window boundaries."""
        if step_k < 1:
            raise ValueError(f"step_k must be >= 1, got {step_k}")

        self.acc_sum += accepted_count / step_k
        self.acc_count += 1
        if self.acc_count < self.adjust_window:
            return None

        average = self.acc_sum / self.acc_count
        self.last_average = average
        self.acc_sum = 0.0
        self.acc_count = 0

        previous_k = self._current_k
        if average > self.high_threshold and self._current_k < self.max_k:
            self._current_k += 1
        elif average < self.low_threshold and self._current_k > self.min_k:
            self._current_k -= 1

        if self._current_k == previous_k:
            return None

        self.k_history.append(self._current_k)
        direction = "Increasing" if self._current_k > previous_k else "Decreasing"
        logger.info(
            f"{direction} speculative window to {self._current_k} "
            f"(avg acceptance {average * 100:.0f}%)"
        )
        return self._current_k

    def get_info(self) -> Dict[str, Any]:
        """Get controller information."""
        return {
            "controller": self.name,
            "current_k": self._current_k,
            "initial_k": self.initial_k,
            "min_k": self.min_k,
            "max_k": self.max_k,
            "adjust_window": self.adjust_window,
            "high_threshold": self.high_threshold,
            "low_threshold": self.low_threshold,
            "last_average": self.last_average,
        }


def create_controller(controller_type: str, **kwargs: Any) -> KController:
    """
    Create a K controller by type.

    Args:
        controller_type: Type of controller to create
        **kwargs: Controller-specific parameters

    Returns:
        KController instance

    Raises:
        ConfigError: If controller_type is not recognized
    """
    if controller_type == "fixed":
        return FixedKController(kwargs.get("k", kwargs.get("initial_k", 3)))
    elif controller_type == "adaptive":
        return WindowController(
            initial_k=kwargs.get("initial_k", 3),
            min_k=kwargs.get("min_k", 1),
            max_k=kwargs.get("max_k", 8),
            adjust_window=kwargs.get("adjust_window", 12),
            high_threshold=kwargs.get("high_threshold", 0.6),
            low_threshold=kwargs.get("low_threshold", 0.4),
        )
    else:
        raise ConfigError(
            f"Unknown controller: {controller_type}. "
            f"Available: ['fixed', 'adaptive']"
        )
