"""
Authentication Module - Black Box Interface

Purpose: Validate API keys
Interface: verify_api_key(), generate_api_key()
Hidden: Key storage and comparison

Can be replaced with any other auth implementation without affecting other modules.
"""

from .auth import AuthModule

__all__ = ["AuthModule"]
