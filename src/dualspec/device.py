"""
Device Selection and Synchronization

Picks a torch device and provides the host/device barrier used by the
pipeline. All tensor work is queued asynchronously on the accelerator; the
pipeline blocks on a barrier only at the two points per iteration where the
host must read results.
"""

import logging
from typing import Union

import torch

logger = logging.getLogger(__name__)

DeviceLike = Union[str, torch.device]


def select_device(device: str = "auto") -> str:
    """Select the best available device."""
    if device == "auto":
        if torch.backends.mps.is_available():
            return "mps"
        elif torch.cuda.is_available():
            return "cuda"
        else:
            return "cpu"
    return device


class DeviceSync:
    """Blocks the host until queued work on one or more devices completes."""

    def __init__(self) -> None:
        self.barrier_count = 0

    def barrier(self, *devices: DeviceLike) -> None:
        """
        Wait for all queued operations on the given devices.

        Duplicate devices are synchronized once. CPU work is already complete
        when the call returns, so CPU devices cost nothing.

        Args:
            *devices: Devices whose queues must drain before returning
        """
        self.barrier_count += 1
        seen = set()
        for device in devices:
            dev = torch.device(device)
            key = (dev.type, dev.index)
            if key in seen:
                continue
            seen.add(key)
            if dev.type == "cuda":
                torch.cuda.synchronize(dev)
            elif dev.type == "mps":
                torch.mps.synchronize()

    def reset(self) -> None:
        """Reset the barrier counter for a new session."""
        self.barrier_count = 0
