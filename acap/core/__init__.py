"""Core acquisition and classification components."""
