"""
Tests for the embedded mini-cluster.
"""
