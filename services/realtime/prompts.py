"""Prompt and session configuration helpers for the realtime engine."""

from __future__ import annotations

from typing import Any, Dict

OPENING_UTTERANCE = "Hello! I just joined the conversation."


def greeting_instructions() -> str:
	"""Return instructions for a brand-new conversation."""
	return (
		"You are a helpful and friendly AI voice assistant. "
		"Greet the user warmly and ask how you can help them today."
	)


def resume_instructions() -> str:
	"""Return instructions for a conversation that continues earlier history."""
	return (
		"You are a helpful AI assistant. Continue the conversation naturally based on the history provided. "
		"Do not re-introduce yourself or repeat previous greetings."
	)


def build_session_config(voice: str, resuming: bool) -> Dict[str, Any]:
	"""Return the `session.update` payload for one upstream connection."""
	return {
		"modalities": ["text", "audio"],
		"instructions": resume_instructions() if resuming else greeting_instructions(),
		"voice": voice,
		"input_audio_format": "pcm16",
		"output_audio_format": "pcm16",
		"input_audio_transcription": {"model": "whisper-1"},
		"turn_detection": {
			"type": "server_vad",
			"threshold": 0.5,
			"prefix_padding_ms": 300,
			"silence_duration_ms": 500,
		},
		"temperature": 0.8,
		"max_response_output_tokens": 4096,
	}
