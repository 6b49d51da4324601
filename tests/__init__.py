"""
Test Suite for dualspec

Unit tests for each component of the speculative decoding loop, end-to-end
pipeline tests on deterministic fake models, CLI and configuration tests, and
a small real-transformer test on a randomly initialised GPT-2. Everything
runs on CPU.
"""
