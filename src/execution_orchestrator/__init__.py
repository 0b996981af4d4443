"""Centralized execution orchestrator for worker-backed workflows."""

__version__ = "0.1.0"
