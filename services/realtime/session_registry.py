"""In-memory registry of live relay sessions used to debounce saves."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from models.conversation_models import SessionRecord

LOGGER = logging.getLogger(__name__)


def should_save_now(
	record: Optional[SessionRecord],
	message_count: int,
	now: float,
	debounce_seconds: float,
) -> bool:
	"""Return whether a periodic save with `message_count` messages should run.

	A save is suppressed when the last accepted save already covered the same
	number of messages or happened less than `debounce_seconds` ago.
	"""
	if record is None:
		return True
	if record.message_count == message_count:
		return False
	if record.last_save_time is not None and now - record.last_save_time < debounce_seconds:
		return False
	return True


class SessionRegistry:
	"""Track session ids so resumptions and redundant saves can be recognized.

	All methods are synchronous and run on the event loop thread, so each
	check-and-update is atomic with respect to other connections.
	"""

	def __init__(
		self,
		debounce_seconds: float = 1.0,
		eviction_delay: float = 30.0,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self.debounce_seconds = debounce_seconds
		self.eviction_delay = eviction_delay
		self._clock = clock
		self._sessions: Dict[str, SessionRecord] = {}
		self._evictions: Dict[str, asyncio.TimerHandle] = {}

	def get(self, session_id: str) -> Optional[SessionRecord]:
		return self._sessions.get(session_id)

	def __contains__(self, session_id: str) -> bool:
		return session_id in self._sessions

	def register(self, session_id: str, username: str, conversation_id: str, message_count: int = 0) -> SessionRecord:
		"""Return the record for `session_id`, creating it on first start.

		A pending delayed eviction is cancelled, which is what lets a client
		that reconnects quickly keep its dedupe state.
		"""
		self._cancel_eviction(session_id)
		record = self._sessions.get(session_id)
		if record is None or record.conversation_id != conversation_id or record.username != username:
			record = SessionRecord(
				session_id=session_id,
				conversation_id=conversation_id,
				username=username,
				message_count=message_count,
			)
			self._sessions[session_id] = record
			LOGGER.info("Tracking session %s for %s/%s", session_id, username, conversation_id)
		return record

	def should_save(self, session_id: str, message_count: int, now: Optional[float] = None) -> bool:
		"""Debounce check for the auto-save timer; updates the record when it passes."""
		now = self._clock() if now is None else now
		record = self._sessions.get(session_id)
		if not should_save_now(record, message_count, now, self.debounce_seconds):
			LOGGER.debug("Skipped save for session %s (%d messages)", session_id, message_count)
			return False
		if record is not None:
			record.message_count = message_count
			record.last_save_time = now
		return True

	def record_save(self, session_id: str, message_count: int, now: Optional[float] = None) -> None:
		"""Note a forced save so the next periodic save is compared against it."""
		record = self._sessions.get(session_id)
		if record is None:
			return
		record.message_count = message_count
		record.last_save_time = self._clock() if now is None else now

	def record_failed_save(self, session_id: str, message_count: int) -> None:
		"""Withdraw the claim `should_save` made for a save that persisted nothing.

		Only undone while no later save has updated the record, so the next
		periodic tick retries the same transcript.
		"""
		record = self._sessions.get(session_id)
		if record is None or record.message_count != message_count:
			return
		record.message_count = 0
		record.last_save_time = None
		LOGGER.warning("Save of %d messages for session %s did not persist; will retry", message_count, session_id)

	def evict(self, session_id: str) -> None:
		"""Forget a session immediately."""
		self._cancel_eviction(session_id)
		if self._sessions.pop(session_id, None) is not None:
			LOGGER.info("Evicted session %s", session_id)

	def schedule_eviction(self, session_id: str, delay: Optional[float] = None) -> None:
		"""Forget a session after a grace period unless it registers again first."""
		if session_id not in self._sessions:
			return
		self._cancel_eviction(session_id)
		loop = asyncio.get_running_loop()
		self._evictions[session_id] = loop.call_later(
			self.eviction_delay if delay is None else delay, self.evict, session_id
		)

	def shutdown(self) -> None:
		"""Cancel all pending evictions."""
		for handle in self._evictions.values():
			handle.cancel()
		self._evictions.clear()

	def _cancel_eviction(self, session_id: str) -> None:
		handle = self._evictions.pop(session_id, None)
		if handle is not None:
			handle.cancel()
