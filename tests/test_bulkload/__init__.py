"""
Tests for the load-and-verify harness.
"""
