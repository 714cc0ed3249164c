"""Autonomous task-continuation engine with claim-evidence completion."""

__version__ = "0.1.0"
