"""Exceptions raised by the realtime relay services."""

from __future__ import annotations


class RelayError(Exception):
	"""Base class for relay failures."""


class UpstreamConnectionError(RelayError):
	"""The dialogue engine handshake failed or timed out."""


class PersistenceError(RelayError):
	"""The primary transcript store failed after all retry attempts."""
