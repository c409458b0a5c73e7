"""Subtitle-synchronised shadowing practice for mpv."""

__version__ = "0.1.0"
