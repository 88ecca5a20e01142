"""Dispatch relay websocket control messages to the dialogue bridge."""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict

from fastapi import WebSocket
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from models.client_messages import AudioMessage, EmergencySaveMessage, StartMessage, StopMessage, parse_client_message
from services.realtime.dialogue_bridge import DialogueBridge
from services.realtime.session_registry import SessionRegistry
from services.realtime.transcript_store import TranscriptStore
from utils.relay_config import RelaySettings

LOGGER = logging.getLogger(__name__)


class RealtimeSessionHandler:
	"""Route websocket messages for a single client connection."""

	def __init__(
		self,
		websocket: WebSocket,
		store: TranscriptStore,
		registry: SessionRegistry,
		settings: RelaySettings,
		upstream_factory: Callable[[], Any],
	) -> None:
		self.websocket = websocket
		self.bridge = DialogueBridge(store, registry, upstream_factory, self._send, settings)

	async def handle(self, payload: Dict[str, Any]) -> None:
		"""Process a single inbound websocket payload."""
		try:
			message = parse_client_message(payload)
		except ValidationError as exc:
			LOGGER.debug("Rejected client payload: %s", exc)
			await self._send_error(f"Invalid message: {exc.errors()[0].get('msg', 'validation failed')}")
			return

		if isinstance(message, AudioMessage):
			await self.bridge.on_audio_frame(message.audio)
		elif isinstance(message, StartMessage):
			await self.bridge.on_start(
				message.username,
				message.session_id,
				message.conversation_id,
				is_reconnection=message.is_reconnection,
				has_messages=message.has_messages,
			)
		elif isinstance(message, StopMessage):
			LOGGER.info("Stop received (new session requested: %s)", message.request_new_session)
			await self.bridge.on_stop(message.request_new_session)
		elif isinstance(message, EmergencySaveMessage):
			await self.bridge.on_emergency_save()

	async def close(self) -> None:
		"""Flush and release the bridge once the transport is gone."""
		await self.bridge.close()

	async def _send_error(self, message: str) -> None:
		await self._send({"type": "error", "message": message})

	async def _send(self, payload: Dict[str, Any]) -> None:
		if self.websocket.client_state is not WebSocketState.CONNECTED:
			return
		try:
			await self.websocket.send_text(json.dumps(payload))
		except (RuntimeError, OSError) as exc:
			LOGGER.debug("Client socket unavailable, dropped %s: %s", payload.get("type"), exc)
