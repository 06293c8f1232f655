"""Utility helpers."""
from orchestrator.utils.datetime_utils import utcnow, window_start

__all__ = ["utcnow", "window_start"]
