"""Local JSON file storage for conversation transcripts.

Used when the database is unavailable. Files live under one directory and
are named `<username>_<condition>_<conversation_id>.json`.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Optional

import aiofiles

from models.conversation_models import ConversationRecord

LOGGER = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class LocalConversationDAL:
	"""Read and write conversation records as JSON files on disk."""

	def __init__(self, directory: Path | str, condition: str = "C") -> None:
		self.directory = Path(directory)
		self.condition = condition

	def path_for(self, username: str, conversation_id: str) -> Path:
		"""Return the file path for a conversation key with unsafe characters replaced."""
		name = f"{username}_{self.condition}_{conversation_id}"
		return self.directory / f"{_UNSAFE_CHARS.sub('_', name)}.json"

	async def get_conversation(self, username: str, conversation_id: str) -> Optional[ConversationRecord]:
		"""Return the stored conversation, or None if no file exists."""
		path = self.path_for(username, conversation_id)
		if not path.exists():
			return None
		async with aiofiles.open(path, "r", encoding="utf-8") as f:
			raw = await f.read()
		return ConversationRecord.from_dict(json.loads(raw))

	async def save_if_longer(self, record: ConversationRecord) -> bool:
		"""Write the record unless the file already holds as many messages.

		Returns:
			True when the file was written.
		"""
		path = self.path_for(record.username, record.conversation_id)
		os.makedirs(self.directory, exist_ok=True)

		if path.exists():
			try:
				async with aiofiles.open(path, "r", encoding="utf-8") as f:
					existing = json.loads(await f.read())
			except (OSError, ValueError) as exc:
				LOGGER.warning("Unreadable local transcript %s will be replaced: %s", path, exc)
			else:
				if int(existing.get("total_messages") or 0) >= record.total_messages:
					LOGGER.info("Skipped local save (no new messages): %s", path)
					return False

		# Write next to the target and swap so readers never see a partial file.
		tmp_path = path.with_name(path.name + ".tmp")
		async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
			await f.write(json.dumps(record.to_dict(), indent=2))
		os.replace(tmp_path, path)
		LOGGER.info("Conversation saved locally: %s (%d messages)", path, record.total_messages)
		return True
