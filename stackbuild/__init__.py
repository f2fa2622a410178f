"""Build container images for every function in a stack manifest."""
from __future__ import annotations

from .cli import main

__all__ = ["main"]
