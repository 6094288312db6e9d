"""Shift lifecycle core: publication, patch approval, archival and weekly generation."""

__version__ = "0.1.0"
