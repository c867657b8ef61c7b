"""Synthetic data for the bulkde test-suite."""
