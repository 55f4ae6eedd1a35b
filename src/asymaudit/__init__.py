"""Audit job orchestration and change-detection worker."""

__version__ = "0.3.0"
