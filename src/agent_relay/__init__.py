"""Concurrent streaming orchestration for remote agent and model backends."""

__version__ = "0.1.0"
