"""Persistence layer for sources and articles."""
