"""Payload preparation and deployment."""
