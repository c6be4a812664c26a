"""Resumable step-by-step orchestration of plan workers."""

__version__ = "0.3.0"
