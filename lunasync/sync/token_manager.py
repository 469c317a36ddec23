"""
Secure GitHub token storage using system credential manager.

Uses keyring library for cross-platform secure storage.
Falls back to a config file with restricted permissions when no keyring
backend is usable (containers, CI).
"""

import logging
import os
from pathlib import Path
from typing import Optional

import keyring
from keyring.backends import fail
from keyring.errors import KeyringError

from lunasync.config.user_config import get_app_data_dir


logger = logging.getLogger(__name__)


class TokenManager:
    """
    Manage GitHub Personal Access Token securely.

    Priority:
    1. Environment variable: LUNASYNC_GIST_TOKEN
    2. System keyring (secure)
    3. Config file (fallback, warns user)
    """

    SERVICE_NAME = "lunasync"
    USERNAME = "github-gist-token"
    ENV_VAR = "LUNASYNC_GIST_TOKEN"

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize token manager.

        Args:
            config_dir: Configuration directory (default: app data dir)
        """
        self.config_dir = config_dir or get_app_data_dir()
        self.config_file = self.config_dir / "gist_token.txt"

    def get_token(self) -> Optional[str]:
        """
        Get GitHub token from secure storage.

        Returns:
            GitHub token or None if not found
        """
        token = os.getenv(self.ENV_VAR)
        if token:
            return token

        if self.is_keyring_available():
            try:
                token = keyring.get_password(self.SERVICE_NAME, self.USERNAME)
                if token:
                    return token
            except KeyringError as e:
                logger.debug("Keyring lookup failed: %s", e)

        if self.config_file.exists():
            try:
                return self.config_file.read_text().strip() or None
            except OSError as e:
                logger.warning("Could not read %s: %s", self.config_file, e)

        return None

    def set_token(self, token: str) -> bool:
        """
        Store GitHub token securely.

        Prefers keyring, falls back to config file with warning.

        Args:
            token: GitHub Personal Access Token

        Returns:
            True if stored in the keyring, False if stored in the config file

        Raises:
            ValueError: If token is empty
        """
        if not token:
            raise ValueError("Token cannot be empty")

        if self.is_keyring_available():
            try:
                keyring.set_password(self.SERVICE_NAME, self.USERNAME, token)
                if self.config_file.exists():
                    self.config_file.unlink()
                return True
            except KeyringError as e:
                logger.warning("Could not store token in keyring: %s", e)

        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(token)
        try:
            self.config_file.chmod(0o600)  # rw-------
        except OSError:
            pass

        logger.warning("Token stored in config file (not fully secure): %s", self.config_file)
        return False

    def delete_token(self) -> bool:
        """
        Delete stored token.

        Returns:
            True if a token was deleted
        """
        deleted = False

        if self.is_keyring_available():
            try:
                keyring.delete_password(self.SERVICE_NAME, self.USERNAME)
                deleted = True
            except KeyringError:
                pass  # nothing stored

        if self.config_file.exists():
            self.config_file.unlink()
            deleted = True

        return deleted

    def has_token(self) -> bool:
        return self.get_token() is not None

    def get_storage_location(self) -> str:
        """
        Get description of where token is stored.

        Returns:
            Human-readable storage location
        """
        if os.getenv(self.ENV_VAR):
            return f"Environment variable: {self.ENV_VAR}"

        if self.is_keyring_available():
            try:
                if keyring.get_password(self.SERVICE_NAME, self.USERNAME):
                    return f"System keyring ({keyring.get_keyring().__class__.__name__})"
            except KeyringError:
                pass

        if self.config_file.exists():
            return f"Config file: {self.config_file}"

        return "Not configured"

    @staticmethod
    def is_keyring_available() -> bool:
        """
        Check if a usable keyring backend is configured.

        Returns:
            False when keyring resolved to its fail-always backend
        """
        return not isinstance(keyring.get_keyring(), fail.Keyring)
