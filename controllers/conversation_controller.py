"""Conversation lookup helpers for review tooling."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import HTTPException, Request

from services.realtime.transcript_store import TranscriptStore


async def get_conversation(request: Request, username: str, conversation_id: str) -> Dict[str, Any]:
	"""Return the persisted transcript record for a conversation key."""
	store: TranscriptStore = request.app.state.transcript_store
	record = await store.read_record(username, conversation_id)
	if record is None:
		raise HTTPException(status_code=404, detail=f"Conversation {username}/{conversation_id} not found")
	return record.to_dict()
