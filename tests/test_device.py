"""
Tests for device selection and barriers.
"""

import torch

from dualspec.device import DeviceSync, select_device


class TestSelectDevice:
    """Test device selection."""

    def test_explicit_device(self):
        """Test that an explicit choice is returned unchanged."""
        assert select_device("cpu") == "cpu"

    def test_auto_device(self):
        """Test that auto resolves to a real device type."""
        assert select_device("auto") in ("cpu", "cuda", "mps")


class TestDeviceSync:
    """Test barrier counting."""

    def test_barrier_counts_calls(self):
        """Test that every barrier is counted once regardless of devices."""
        sync = DeviceSync()
        sync.barrier("cpu", torch.device("cpu"))
        sync.barrier("cpu")

        assert sync.barrier_count == 2

        sync.reset()
        assert sync.barrier_count == 0
