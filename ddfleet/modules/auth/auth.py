"""
Authentication module for the ddfleet API.

Validates API keys sent in the X-API-Key header. Keys are configured via
API_KEYS as "key" or "service:key" entries; the service part becomes the
caller identity.
"""

import secrets
from typing import Dict, Optional, Tuple

from ddfleet.config.provider import AuthConfig


class AuthModule:
    """API key authentication."""

    def __init__(self, config: AuthConfig):
        """
        Initialize auth module.

        Args:
            config: Authentication configuration
        """
        self.require_auth = config.require_auth
        self.api_keys: Dict[str, Optional[str]] = dict(config.api_keys)

    def verify_api_key(self, api_key: Optional[str]) -> Tuple[bool, Optional[str]]:
        """
        Verify an API key.

        Returns:
            Tuple of (is_valid, service_identity)
        """
        if not self.require_auth:
            return True, "anonymous"

        if not api_key:
            return False, None

        # Constant-time comparison against every configured key
        for key, service in self.api_keys.items():
            if secrets.compare_digest(api_key.encode("utf-8"), key.encode("utf-8")):
                return True, service
        return False, None

    @staticmethod
    def generate_api_key() -> str:
        """Generate a new random API key."""
        return secrets.token_urlsafe(32)
