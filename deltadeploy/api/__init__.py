"""Remote deployment API."""
