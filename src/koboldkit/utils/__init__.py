"""Utility functions for koboldkit."""

from .imports import safe_import

__all__ = ["safe_import"]
