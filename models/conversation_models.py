"""Conversation domain models for the realtime relay."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
INTERRUPTION_MARKER = "..."


def utc_now_iso() -> str:
	"""Return the current UTC instant as an ISO-8601 string."""
	return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TranscriptMessage:
	"""One finalized utterance in a conversation transcript."""

	sequence: int
	role: str
	content: str
	timestamp: str
	interrupted: bool = False

	def to_dict(self) -> Dict[str, Any]:
		return asdict(self)

	@classmethod
	def from_dict(cls, data: Dict[str, Any]) -> "TranscriptMessage":
		return cls(
			sequence=int(data.get("sequence") or 0),
			role=str(data.get("role") or USER_ROLE),
			content=str(data.get("content") or ""),
			timestamp=str(data.get("timestamp") or ""),
			interrupted=bool(data.get("interrupted", False)),
		)


class ConversationTranscript:
	"""Ordered, append-only list of finalized messages for one connection.

	Sequence numbers continue from the highest sequence found in the
	hydrated history, so a resumed conversation keeps counting where the
	previous connection stopped.
	"""

	def __init__(self, history: Iterable[TranscriptMessage] = ()) -> None:
		self._messages: List[TranscriptMessage] = sorted(history, key=lambda msg: msg.sequence)
		self._next_sequence = self._messages[-1].sequence + 1 if self._messages else 0

	def append(
		self,
		role: str,
		content: str,
		*,
		timestamp: Optional[str] = None,
		interrupted: bool = False,
	) -> TranscriptMessage:
		"""Finalize a message with the next sequence number and return it."""
		message = TranscriptMessage(
			sequence=self._next_sequence,
			role=role,
			content=content,
			timestamp=timestamp or utc_now_iso(),
			interrupted=interrupted,
		)
		self._messages.append(message)
		self._next_sequence += 1
		return message

	@property
	def next_sequence(self) -> int:
		return self._next_sequence

	@property
	def messages(self) -> Tuple[TranscriptMessage, ...]:
		return tuple(self._messages)

	def snapshot(self) -> List[TranscriptMessage]:
		"""Return a copy safe to hand to background persistence."""
		return list(self._messages)

	def __len__(self) -> int:
		return len(self._messages)


@dataclass
class ConversationRecord:
	"""Persisted shape of a conversation, keyed by (username, conversation_id)."""

	username: str
	conversation_id: str
	messages: List[TranscriptMessage]
	condition: str = "C"
	timestamp: str = field(default_factory=utc_now_iso)
	updated_at: str = field(default_factory=utc_now_iso)

	@property
	def total_messages(self) -> int:
		return len(self.messages)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"username": self.username,
			"conversation_id": self.conversation_id,
			"condition": self.condition,
			"timestamp": self.timestamp,
			"messages": [msg.to_dict() for msg in self.messages],
			"total_messages": self.total_messages,
			"updated_at": self.updated_at,
		}

	@classmethod
	def from_dict(cls, data: Dict[str, Any]) -> "ConversationRecord":
		return cls(
			username=str(data["username"]),
			conversation_id=str(data["conversation_id"]),
			messages=[TranscriptMessage.from_dict(item) for item in data.get("messages") or []],
			condition=str(data.get("condition") or "C"),
			timestamp=str(data.get("timestamp") or utc_now_iso()),
			updated_at=str(data.get("updated_at") or utc_now_iso()),
		)


@dataclass
class SessionRecord:
	"""Process-local bookkeeping used to suppress redundant saves."""

	session_id: str
	conversation_id: str
	username: str
	message_count: int = 0
	last_save_time: Optional[float] = None


@dataclass
class AssistantTurn:
	"""Accumulator for the assistant turn currently being streamed."""

	content: str = ""
	timestamp: str = field(default_factory=utc_now_iso)
	interrupted: bool = False


@dataclass(frozen=True)
class IdleTurn:
	"""No assistant response is in flight.

	`aborted_response_id` names a response ended by an engine error; late
	events for it are stale.
	"""

	aborted_response_id: Optional[str] = None


@dataclass(frozen=True)
class ActiveTurn:
	"""An assistant response is streaming into `turn`."""

	response_id: str
	turn: AssistantTurn


@dataclass(frozen=True)
class InterruptedTurn:
	"""The user barged in; anything still arriving for `response_id` is stale."""

	response_id: str


TurnState = Union[IdleTurn, ActiveTurn, InterruptedTurn]
