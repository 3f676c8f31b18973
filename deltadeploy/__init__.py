"""Delta deployment client: upload only what the remote does not already hold."""

__version__ = "0.1.0"
