"""Lease-based worker for pairwise IPA similarity matching."""

__version__ = "0.1.0"
