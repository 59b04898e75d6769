"""Content acquisition: discovery, redirects, bot protection, extraction and validation."""
