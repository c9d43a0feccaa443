"""Deployment & health monitoring orchestrator."""

__version__ = "0.1.0"
