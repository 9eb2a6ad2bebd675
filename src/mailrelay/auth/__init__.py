"""API key authentication for the HTTP API."""

from mailrelay.auth.api_keys import ApiKeyAuthenticator, generate_api_key, hash_api_key

__all__ = ["ApiKeyAuthenticator", "generate_api_key", "hash_api_key"]
