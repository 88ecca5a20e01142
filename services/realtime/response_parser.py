"""Helpers to extract fields from realtime engine server events."""

from __future__ import annotations

from typing import Any, Dict, Optional


def response_id(event: Dict[str, Any]) -> Optional[str]:
	"""Return the response id an event belongs to, if it carries one."""
	if event.get("response_id"):
		return str(event["response_id"])
	response = event.get("response")
	if isinstance(response, dict) and response.get("id"):
		return str(response["id"])
	return None


def extract_text(event: Dict[str, Any]) -> str:
	"""Return the longest text or audio transcript in a `response.done` payload."""
	best = ""
	response = event.get("response") or {}
	for item in response.get("output") or []:
		if item.get("type") != "message":
			continue
		for content in item.get("content") or []:
			text = content.get("transcript") or content.get("text") or ""
			if len(text) > len(best):
				best = text
	return best


def error_message(event: Dict[str, Any]) -> str:
	"""Return the human-readable message of an `error` event."""
	error = event.get("error")
	if isinstance(error, dict):
		return str(error.get("message") or error.get("type") or "Unknown error")
	return str(error or "Unknown error")
