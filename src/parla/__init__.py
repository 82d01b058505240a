"""Parla — realtime spoken-sentence tutor core."""

__version__ = "0.1.0"
