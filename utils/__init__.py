# utils/__init__.py
"""Shared helpers for Folio."""

from .logging import setup_logging_folio

__all__ = ["setup_logging_folio"]
