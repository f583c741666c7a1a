"""Lifecycle orchestration for single-tenant game-streaming instances."""

__version__ = "0.1.0"
