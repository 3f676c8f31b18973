"""API key storage."""
