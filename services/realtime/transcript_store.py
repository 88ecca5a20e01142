"""Durable transcript persistence with retry and local-file fallback."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from dal.conversation_dal import SKIPPED, ConversationDAL
from dal.local_conversation_dal import LocalConversationDAL
from models.conversation_models import ConversationRecord, TranscriptMessage
from services.realtime.errors import PersistenceError

LOGGER = logging.getLogger(__name__)

LOCAL = "local"
FAILED = "failed"

ConversationKey = Tuple[str, str]


class TranscriptStore:
	"""Keyed, idempotent upsert/read of conversation transcripts.

	The store is shared by every connection in the process. Writes for one
	(username, conversation_id) key are serialized with a per-key lock so the
	length-dominance check and the write happen without interleaving.
	"""

	def __init__(
		self,
		dal: ConversationDAL,
		local_dal: LocalConversationDAL,
		*,
		condition: str = "C",
		max_attempts: int = 3,
		retry_delay: float = 2.0,
		sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
		max_cached_conversations: int = 256,
	) -> None:
		self._dal = dal
		self._local_dal = local_dal
		self._condition = condition
		self._max_attempts = max(1, max_attempts)
		self._retry_delay = retry_delay
		self._sleep = sleep
		self._max_cached = max(1, max_cached_conversations)
		self._locks: Dict[ConversationKey, asyncio.Lock] = {}
		self._lock_users: Dict[ConversationKey, int] = {}
		self._history: "OrderedDict[ConversationKey, List[TranscriptMessage]]" = OrderedDict()

	async def upsert(self, username: str, conversation_id: str, messages: Sequence[TranscriptMessage]) -> str:
		"""Persist `messages` unless the stored transcript is at least as long.

		Never raises: primary failures are retried, then written to the local
		fallback file, and a fallback failure is logged.

		Returns:
			"inserted", "updated", "skipped", "local" or "failed".
		"""
		if not messages:
			LOGGER.debug("No messages to save for %s/%s", username, conversation_id)
			return SKIPPED

		key = (username, conversation_id)
		record = ConversationRecord(
			username=username,
			conversation_id=conversation_id,
			messages=list(messages),
			condition=self._condition,
		)

		async with self._key_lock(key):
			self._remember(key, record.messages)
			try:
				outcome = await self._upsert_primary(record)
			except PersistenceError as exc:
				LOGGER.error("Primary transcript store failed for %s/%s: %s", username, conversation_id, exc)
				return await self._upsert_local(record)

		if outcome == SKIPPED:
			LOGGER.info("Skipped update (no new messages): %s/%s", username, conversation_id)
		else:
			LOGGER.info("Conversation %s: %s/%s (%d messages)", outcome, username, conversation_id, record.total_messages)
		return outcome

	async def read(self, username: str, conversation_id: str) -> List[TranscriptMessage]:
		"""Return the stored ordered messages, or an empty list if absent."""
		cached = self.cached_history(username, conversation_id)
		if cached:
			LOGGER.info("Loaded %d messages from memory for %s/%s", len(cached), username, conversation_id)
			return cached
		record = await self.read_record(username, conversation_id)
		if record is None:
			LOGGER.info("No existing conversation found for %s/%s", username, conversation_id)
			return []
		return sorted(record.messages, key=lambda msg: msg.sequence)

	async def read_record(self, username: str, conversation_id: str) -> Optional[ConversationRecord]:
		"""Return the longest persisted record across the database and the local file.

		A conversation saved to the fallback file during a database outage can
		be longer than the database row; the longer transcript wins, as it does
		for writes.
		"""
		try:
			primary = await self._dal.get_conversation(username, conversation_id)
		except Exception as exc:
			LOGGER.warning("Database read failed for %s/%s: %s", username, conversation_id, exc)
			primary = None
		try:
			local = await self._local_dal.get_conversation(username, conversation_id)
		except (OSError, ValueError, KeyError) as exc:
			LOGGER.error("Local transcript read failed for %s/%s: %s", username, conversation_id, exc)
			local = None
		if local is None:
			return primary
		if primary is None or local.total_messages > primary.total_messages:
			LOGGER.info("Using local transcript for %s/%s (%d messages)", username, conversation_id, local.total_messages)
			return local
		return primary

	def cached_history(self, username: str, conversation_id: str) -> List[TranscriptMessage]:
		"""Return the last transcript this process saved for the key, if any."""
		return list(self._history.get((username, conversation_id), ()))

	def _remember(self, key: ConversationKey, messages: List[TranscriptMessage]) -> None:
		cached = self._history.get(key)
		if cached is None or len(messages) >= len(cached):
			self._history[key] = list(messages)
		self._history.move_to_end(key)
		while len(self._history) > self._max_cached:
			self._history.popitem(last=False)

	@contextlib.asynccontextmanager
	async def _key_lock(self, key: ConversationKey):
		"""Hold the lock for `key`; it is dropped once nobody holds or awaits it."""
		lock = self._locks.get(key)
		if lock is None:
			lock = self._locks[key] = asyncio.Lock()
		self._lock_users[key] = self._lock_users.get(key, 0) + 1
		try:
			async with lock:
				yield
		finally:
			self._lock_users[key] -= 1
			if not self._lock_users[key]:
				del self._lock_users[key]
				del self._locks[key]

	async def _upsert_primary(self, record: ConversationRecord) -> str:
		last_exc: Optional[Exception] = None
		for attempt in range(1, self._max_attempts + 1):
			try:
				return await self._dal.upsert_if_longer(record)
			except Exception as exc:
				last_exc = exc
				LOGGER.warning("Save attempt %d/%d failed: %s", attempt, self._max_attempts, exc)
				if attempt < self._max_attempts:
					await self._sleep(self._retry_delay * attempt)
		raise PersistenceError(str(last_exc)) from last_exc

	async def _upsert_local(self, record: ConversationRecord) -> str:
		try:
			written = await self._local_dal.save_if_longer(record)
		except (OSError, TypeError, ValueError) as exc:
			LOGGER.error("Error saving conversation to local file: %s", exc)
			return FAILED
		return LOCAL if written else SKIPPED
