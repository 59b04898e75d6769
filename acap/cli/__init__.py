"""Command-line interface for ACAP."""
