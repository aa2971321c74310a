"""Lecture Notes: turn lecture recordings and documents into study material."""

__version__ = "0.1.0"
