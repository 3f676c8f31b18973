"""Keyring-backed storage for the API key and secret."""

import logging
import os
from typing import Optional, Tuple

import keyring
import keyring.errors

log = logging.getLogger(__name__)

KEY_API_KEY = "api_key"
KEY_API_SECRET = "api_secret"


def _keyring_service_name() -> str:
    """Use a separate keyring namespace when DELTADEPLOY_CONFIG_DIR is set (tests, CI)."""
    if os.environ.get("DELTADEPLOY_CONFIG_DIR", "").strip():
        return "DeltaDeploy-Test"
    return "DeltaDeploy"


class CredentialsStore:
    """
    Stores the API key and secret in the OS keyring (Windows Credential Manager,
    macOS Keychain, Linux Secret Service). DELTADEPLOY_API_KEY and
    DELTADEPLOY_API_SECRET in the environment take precedence.
    """

    def get_stored(self) -> Optional[Tuple[str, str]]:
        """
        Return (api_key, secret) from the environment or keyring, else None.
        On keyring read error returns None so the user can run login again.
        """
        env_key = os.environ.get("DELTADEPLOY_API_KEY", "").strip()
        env_secret = os.environ.get("DELTADEPLOY_API_SECRET", "").strip()
        if env_key and env_secret:
            log.debug("Using API credentials from environment")
            return (env_key, env_secret)
        try:
            service = _keyring_service_name()
            api_key = keyring.get_password(service, KEY_API_KEY)
            secret = keyring.get_password(service, KEY_API_SECRET)
        except keyring.errors.KeyringError as e:
            log.warning("Could not read stored credentials: %s", e)
            return None
        if api_key and secret:
            return (api_key, secret)
        return None

    def set_stored(self, api_key: str, secret: str) -> None:
        """Store API key and secret in keyring."""
        service = _keyring_service_name()
        keyring.set_password(service, KEY_API_KEY, api_key)
        keyring.set_password(service, KEY_API_SECRET, secret)

    def clear_stored(self) -> None:
        """Remove stored credentials."""
        service = _keyring_service_name()
        for key in (KEY_API_KEY, KEY_API_SECRET):
            try:
                keyring.delete_password(service, key)
            except keyring.errors.PasswordDeleteError:
                pass
