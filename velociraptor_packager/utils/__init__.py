"""Utility helpers for the packager."""

from . import hashing, io

__all__ = [
    "hashing",
    "io",
]
