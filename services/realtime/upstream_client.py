"""Duplex connection to the upstream realtime dialogue engine."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from services.realtime.errors import UpstreamConnectionError

LOGGER = logging.getLogger(__name__)


class RealtimeUpstream:
	"""Send client-side events to, and read server events from, the engine.

	The connection speaks the realtime beta protocol: every frame is one JSON
	object with a `type` field.
	"""

	def __init__(self, url: str, api_key: str, *, connect_timeout: float = 10.0) -> None:
		self.url = url
		self._api_key = api_key
		self._connect_timeout = connect_timeout
		self._ws: Optional[ClientConnection] = None

	@property
	def is_open(self) -> bool:
		return self._ws is not None and self._ws.state is State.OPEN

	async def connect(self) -> None:
		"""Open the websocket within the configured timeout.

		Raises:
			UpstreamConnectionError: If the handshake fails or times out.
		"""
		headers = {
			"Authorization": f"Bearer {self._api_key}",
			"OpenAI-Beta": "realtime=v1",
		}
		try:
			self._ws = await asyncio.wait_for(
				connect(self.url, additional_headers=headers, max_size=None),
				timeout=self._connect_timeout,
			)
		except asyncio.TimeoutError as exc:
			raise UpstreamConnectionError(f"Timed out connecting to {self.url}") from exc
		except (OSError, WebSocketException) as exc:
			raise UpstreamConnectionError(f"Failed to connect to {self.url}: {exc}") from exc
		LOGGER.info("Connected to realtime engine")

	async def events(self) -> AsyncIterator[Dict[str, Any]]:
		"""Yield decoded server events in arrival order until the socket closes."""
		if self._ws is None:
			return
		try:
			async for raw in self._ws:
				try:
					event = json.loads(raw)
				except ValueError:
					LOGGER.warning("Dropping non-JSON frame from realtime engine")
					continue
				if isinstance(event, dict):
					yield event
		except ConnectionClosed as exc:
			LOGGER.info("Realtime engine connection closed: %s", exc)

	async def send(self, event: Dict[str, Any]) -> bool:
		"""Send one client event. Returns False if the socket is not open."""
		if not self.is_open:
			return False
		try:
			await self._ws.send(json.dumps(event))
		except ConnectionClosed:
			LOGGER.debug("Dropped %s: realtime engine connection closed", event.get("type"))
			return False
		return True

	async def update_session(self, session: Dict[str, Any]) -> bool:
		return await self.send({"type": "session.update", "session": session})

	async def append_audio(self, audio_b64: str) -> bool:
		return await self.send({"type": "input_audio_buffer.append", "audio": audio_b64})

	async def cancel_response(self) -> bool:
		return await self.send({"type": "response.cancel"})

	async def add_history_item(self, role: str, text: str) -> bool:
		"""Insert a prior message as conversation context without asking for a reply."""
		content_type = "input_text" if role == "user" else "text"
		item = {
			"type": "message",
			"role": role,
			"content": [{"type": content_type, "text": text}],
		}
		return await self.send({"type": "conversation.item.create", "item": item})

	async def send_greeting(self, opening_text: str) -> bool:
		"""Inject the scripted opening utterance and request a generated turn."""
		item = {
			"type": "message",
			"role": "user",
			"content": [{"type": "input_text", "text": opening_text}],
		}
		if not await self.send({"type": "conversation.item.create", "item": item}):
			return False
		return await self.send({"type": "response.create"})

	async def close(self) -> None:
		if self._ws is not None:
			try:
				await self._ws.close()
			except (OSError, WebSocketException) as exc:
				LOGGER.debug("Error while closing realtime engine socket: %s", exc)
