"""Ephemeral self-signed TLS credentials and fail-fast output channels."""
