"""Shared helpers for backend test suites."""

from .realtime import TEST_SECRET, RecordingSink, connect, flush, make_token

__all__ = [
    "TEST_SECRET",
    "RecordingSink",
    "connect",
    "flush",
    "make_token",
]
