"""ACAP - adaptive content acquisition pipeline."""

__version__ = "0.1.0"
