"""Utility modules shared by the dispatch processes."""

from .logging import setup_logging

__all__ = ["setup_logging"]
