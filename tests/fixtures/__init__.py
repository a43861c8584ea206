"""Shared test fixtures for sqlagent tests.

This package provides:
- An in-memory fake driver pool that records every statement
"""

__all__ = [
    "fake_driver",
]
