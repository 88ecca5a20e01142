"""WebSocket endpoint relaying a browser client to the realtime engine."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from services.realtime.ws_session import RealtimeSessionHandler

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
	"""Relay one client's audio and control messages over a single websocket."""
	await websocket.accept()
	LOGGER.info("Client connected")
	state = websocket.app.state
	handler = RealtimeSessionHandler(
		websocket,
		state.transcript_store,
		state.session_registry,
		state.settings,
		state.upstream_factory,
	)
	try:
		while True:
			try:
				raw = await websocket.receive_text()
			except WebSocketDisconnect:
				break
			except KeyError:
				await websocket.send_text(json.dumps({"type": "error", "message": "Expected a text frame"}))
				continue
			try:
				payload = json.loads(raw)
			except ValueError:
				await websocket.send_text(json.dumps({"type": "error", "message": "Payload must be JSON"}))
				continue
			if not isinstance(payload, dict):
				await websocket.send_text(json.dumps({"type": "error", "message": "Payload must be a JSON object"}))
				continue
			await handler.handle(payload)
	finally:
		LOGGER.info("Client disconnected")
		await handler.close()
	if websocket.client_state is WebSocketState.CONNECTED:
		await websocket.close()
