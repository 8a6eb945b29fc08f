"""Chatline: real-time messaging and presence backend."""

__version__ = "1.0.0"
