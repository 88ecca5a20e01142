"""Decide how a new connection starts and restore prior context upstream."""

from __future__ import annotations

import enum
import logging
from typing import Sequence

from models.conversation_models import ASSISTANT_ROLE, USER_ROLE, TranscriptMessage
from services.realtime.prompts import OPENING_UTTERANCE

LOGGER = logging.getLogger(__name__)


class StartupMode(enum.Enum):
	GREET = "greet"
	REPLAY = "replay"
	SILENT = "silent"


def choose_startup_mode(is_first_connection: bool, prior_messages: Sequence[TranscriptMessage]) -> StartupMode:
	"""Pick the startup behaviour for a connection.

	History always wins: if there is anything to restore it is replayed as
	context. Only a first-ever connection with no history gets a greeting;
	a reconnection with nothing to restore resumes silently.
	"""
	if prior_messages:
		return StartupMode.REPLAY
	if is_first_connection:
		return StartupMode.GREET
	return StartupMode.SILENT


class ConversationReconciler:
	"""Apply a startup mode to a freshly configured upstream connection."""

	def __init__(self, opening_utterance: str = OPENING_UTTERANCE) -> None:
		self.opening_utterance = opening_utterance

	async def restore(self, upstream, mode: StartupMode, prior_messages: Sequence[TranscriptMessage]) -> int:
		"""Greet, replay or do nothing; return the number of replayed messages.

		Replayed items are context only: no response is requested for them.
		"""
		if mode is StartupMode.GREET:
			LOGGER.info("Starting new conversation with a greeting")
			await upstream.send_greeting(self.opening_utterance)
			return 0

		if mode is StartupMode.SILENT:
			LOGGER.info("Resuming silently; nothing to restore")
			return 0

		replayed = 0
		for message in prior_messages:
			if message.role == USER_ROLE:
				await upstream.add_history_item(USER_ROLE, message.content)
			elif message.role == ASSISTANT_ROLE and message.content.strip():
				await upstream.add_history_item(ASSISTANT_ROLE, message.content)
			else:
				continue
			replayed += 1
		LOGGER.info("Replayed %d conversation items for context", replayed)
		return replayed
