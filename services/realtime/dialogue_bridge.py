"""Per-connection bridge between a browser client and the realtime engine.

One `DialogueBridge` exists per client websocket. It owns the upstream
connection, the transcript built during the connection, and the assistant
turn state machine:

	Idle --response.created--> Active --response.done--> Idle
	Active --speech_started--> Interrupted --response.cancelled/done--> Idle

Upstream events are consumed by a single task in arrival order, so the
state and the transcript are only ever touched by one coroutine at a time.
Persistence runs in background tasks and never blocks the event stream.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from models.conversation_models import (
	ASSISTANT_ROLE,
	INTERRUPTION_MARKER,
	USER_ROLE,
	ActiveTurn,
	AssistantTurn,
	ConversationTranscript,
	IdleTurn,
	InterruptedTurn,
	TranscriptMessage,
	TurnState,
)
from services.realtime.conversation_reconciler import ConversationReconciler, StartupMode, choose_startup_mode
from services.realtime.errors import UpstreamConnectionError
from services.realtime.prompts import build_session_config
from services.realtime.response_parser import error_message, extract_text, response_id
from services.realtime.session_registry import SessionRegistry
from services.realtime.transcript_store import FAILED, TranscriptStore
from utils.relay_config import RelaySettings

LOGGER = logging.getLogger(__name__)

# Upstream errors that are expected protocol noise and never reach the client.
TRANSIENT_ERROR_FRAGMENTS = ("buffer too small", "active response")

UPSTREAM_CONNECT_ERROR = "Connection error with the dialogue engine. Check server logs for details."

Emitter = Callable[[Dict[str, Any]], Awaitable[None]]


class DialogueBridge:
	"""Relay one client's conversation to the engine and record its transcript."""

	def __init__(
		self,
		store: TranscriptStore,
		registry: SessionRegistry,
		upstream_factory: Callable[[], Any],
		emit: Emitter,
		settings: RelaySettings,
		reconciler: Optional[ConversationReconciler] = None,
	) -> None:
		self._store = store
		self._registry = registry
		self._upstream_factory = upstream_factory
		self._emit = emit
		self._settings = settings
		self._reconciler = reconciler or ConversationReconciler()

		self.username: Optional[str] = None
		self.session_id: Optional[str] = None
		self.conversation_id: Optional[str] = None
		self.transcript = ConversationTranscript()
		self.state: TurnState = IdleTurn()
		self.upstream = None

		self._pump_task: Optional[asyncio.Task] = None
		self._autosave_task: Optional[asyncio.Task] = None
		self._saves: Set[asyncio.Task] = set()
		self._closed = False

		self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
			"input_audio_buffer.speech_started": self._on_speech_started,
			"input_audio_buffer.speech_stopped": self._on_speech_stopped,
			"conversation.item.input_audio_transcription.completed": self._on_user_transcription,
			"response.created": self._on_response_created,
			"response.text.delta": self._on_transcript_delta,
			"response.audio_transcript.delta": self._on_transcript_delta,
			"response.audio_transcript.done": self._on_transcript_done,
			"response.audio.delta": self._on_audio_delta,
			"response.done": self._on_response_done,
			"response.cancelled": self._on_response_cancelled,
			"error": self._on_error,
		}

	@property
	def has_conversation(self) -> bool:
		return bool(self.username and self.conversation_id)

	# ------------------------------------------------------------------
	# Client-driven operations
	# ------------------------------------------------------------------

	async def on_start(
		self,
		username: str,
		session_id: str,
		conversation_id: str,
		is_reconnection: bool = False,
		has_messages: bool = False,
	) -> Optional[StartupMode]:
		"""Hydrate history, connect upstream and greet, replay or resume.

		Returns the chosen startup mode, or None if the engine was unreachable.
		"""
		if self.has_conversation:
			self._spawn_save()
		self._cancel_autosave()
		await self._shutdown_upstream()

		self.username = username
		self.session_id = session_id
		self.conversation_id = conversation_id
		LOGGER.info(
			"Start request: user=%s session=%s conversation=%s reconnection=%s has_messages=%s",
			username, session_id, conversation_id, is_reconnection, has_messages,
		)

		history: List[TranscriptMessage] = []
		if has_messages or self._store.cached_history(username, conversation_id):
			history = await self._store.read(username, conversation_id)
		self.transcript = ConversationTranscript(history)
		self.state = IdleTurn()
		self._registry.register(session_id, username, conversation_id, len(history))

		mode = choose_startup_mode(not is_reconnection, history)
		LOGGER.info("Startup mode %s with %d prior messages, next sequence %d", mode.value, len(history), self.transcript.next_sequence)
		self._start_autosave()

		upstream = self._upstream_factory()
		try:
			await upstream.connect()
		except UpstreamConnectionError as exc:
			LOGGER.error("Realtime engine handshake failed: %s", exc)
			await self._emit({"type": "error", "message": UPSTREAM_CONNECT_ERROR})
			return None
		self.upstream = upstream

		await upstream.update_session(build_session_config(self._settings.voice, resuming=mode is not StartupMode.GREET))
		replayed = await self._reconciler.restore(upstream, mode, history)
		if mode is StartupMode.REPLAY:
			await self._emit({"type": "history_restored", "count": replayed})
		await self._emit({"type": "connection_ready"})

		self._pump_task = asyncio.create_task(self._pump(upstream))
		return mode

	async def on_audio_frame(self, audio_b64: str) -> bool:
		"""Forward a base64 PCM16 frame; frames are dropped while upstream is closed."""
		if self.upstream is None or not self.upstream.is_open:
			return False
		return await self.upstream.append_audio(audio_b64)

	async def on_stop(self, request_new_session: bool = False) -> None:
		"""Flush the transcript and close the engine connection."""
		self._cancel_autosave()
		if self.has_conversation and len(self.transcript):
			LOGGER.info("Saving conversation before stop: %s/%s (%d messages)", self.username, self.conversation_id, len(self.transcript))
			await self._force_save(self.username, self.conversation_id, self.session_id, self.transcript.snapshot())
		if request_new_session and self.session_id:
			self._registry.evict(self.session_id)
		await self._shutdown_upstream()

	async def on_emergency_save(self) -> None:
		"""Best-effort immediate save requested by a client that is about to vanish."""
		LOGGER.info("Emergency save requested by client")
		if not self.has_conversation or not len(self.transcript):
			return
		try:
			await self._force_save(self.username, self.conversation_id, self.session_id, self.transcript.snapshot())
		except Exception:
			LOGGER.exception("Emergency save failed for %s/%s", self.username, self.conversation_id)

	async def close(self) -> None:
		"""Release the connection: final save, stop timers, close upstream."""
		if self._closed:
			return
		self._closed = True
		self._cancel_autosave()
		if self.has_conversation and len(self.transcript):
			LOGGER.info("Final save on disconnect: %s/%s (%d messages)", self.username, self.conversation_id, len(self.transcript))
			self._spawn_save()
		await self._shutdown_upstream()
		await self.wait_for_saves(timeout=self._settings.close_save_timeout_seconds)
		if self.session_id:
			self._registry.schedule_eviction(self.session_id)

	async def wait_for_saves(self, timeout: Optional[float] = None) -> None:
		"""Wait for background saves started so far, up to `timeout` seconds."""
		pending = set(self._saves)
		if pending:
			await asyncio.wait(pending, timeout=timeout)

	# ------------------------------------------------------------------
	# Upstream event state machine
	# ------------------------------------------------------------------

	async def on_upstream_event(self, event: Dict[str, Any]) -> None:
		"""Apply one engine event to the turn state and transcript."""
		handler = self._handlers.get(event.get("type"))
		if handler is not None:
			await handler(event)

	async def _pump(self, upstream) -> None:
		async for event in upstream.events():
			try:
				await self.on_upstream_event(event)
			except Exception:
				LOGGER.exception("Failed to handle realtime event %s", event.get("type"))
		LOGGER.info("Realtime engine connection closed")
		if len(self.transcript):
			self._spawn_save()

	async def _on_speech_started(self, event: Dict[str, Any]) -> None:
		LOGGER.debug("User started speaking")
		state = self.state
		if not isinstance(state, ActiveTurn):
			return

		# Seal the turn before awaiting anything so later deltas see the new state.
		self.state = InterruptedTurn(state.response_id)
		turn = state.turn
		turn.interrupted = True
		turn.content += INTERRUPTION_MARKER
		self.transcript.append(ASSISTANT_ROLE, turn.content, timestamp=turn.timestamp, interrupted=True)
		self._spawn_save()
		LOGGER.info("Interrupting response %s", state.response_id)

		if self.upstream is not None:
			await self.upstream.cancel_response()
		await self._emit({"type": "response_interrupted"})

	async def _on_speech_stopped(self, event: Dict[str, Any]) -> None:
		LOGGER.debug("User stopped speaking")

	async def _on_user_transcription(self, event: Dict[str, Any]) -> None:
		text = (event.get("transcript") or "").strip()
		if not text:
			LOGGER.debug("Ignoring empty user transcription")
			return
		LOGGER.info("Transcription: %s", text)
		self.transcript.append(USER_ROLE, text)
		self._spawn_save()
		await self._emit({"type": "user_transcription", "text": text})

	async def _on_response_created(self, event: Dict[str, Any]) -> None:
		rid = response_id(event) or ""
		if isinstance(self.state, ActiveTurn):
			LOGGER.warning(
				"Response %s created while %s is still active; discarding its partial content",
				rid, self.state.response_id,
			)
		LOGGER.info("Response created: %s", rid)
		self.state = ActiveTurn(response_id=rid, turn=AssistantTurn())
		await self._emit({"type": "response_creating"})

	async def _on_transcript_delta(self, event: Dict[str, Any]) -> None:
		if not self._is_current(event):
			LOGGER.debug("Dropped transcript delta for response %s", response_id(event))
			return
		delta = event.get("delta") or ""
		self.state.turn.content += delta
		await self._emit({"type": "assistant_transcript_delta", "text": delta})

	async def _on_audio_delta(self, event: Dict[str, Any]) -> None:
		if not self._is_current(event):
			return
		await self._emit({"type": "assistant_audio_delta", "audio": event.get("delta") or ""})

	async def _on_transcript_done(self, event: Dict[str, Any]) -> None:
		transcript = event.get("transcript") or ""
		if self._is_current(event):
			turn = self.state.turn
			if len(transcript) > len(turn.content):
				turn.content = transcript
		elif not isinstance(self.state, IdleTurn) or self._is_aborted(event):
			return
		await self._emit({"type": "assistant_transcript_complete", "text": transcript})

	async def _on_response_done(self, event: Dict[str, Any]) -> None:
		state = self.state
		if isinstance(state, InterruptedTurn) and response_id(event) in (None, state.response_id):
			self.state = IdleTurn()
			return
		if not self._is_current(event):
			LOGGER.debug("Ignoring response.done for %s", response_id(event))
			return

		turn = state.turn
		final_text = extract_text(event)
		if len(final_text) > len(turn.content):
			turn.content = final_text
		self.state = IdleTurn()
		LOGGER.info("Response completed: %s", state.response_id)

		if turn.content.strip():
			self.transcript.append(ASSISTANT_ROLE, turn.content, timestamp=turn.timestamp)
			self._spawn_save()
		await self._emit({"type": "response_complete"})

	async def _on_response_cancelled(self, event: Dict[str, Any]) -> None:
		state = self.state
		if isinstance(state, (ActiveTurn, InterruptedTurn)) and response_id(event) in (None, state.response_id):
			LOGGER.info("Response cancelled: %s", state.response_id)
			self.state = IdleTurn()

	async def _on_error(self, event: Dict[str, Any]) -> None:
		message = error_message(event)
		if any(fragment in message.lower() for fragment in TRANSIENT_ERROR_FRAGMENTS):
			LOGGER.info("Ignoring transient realtime engine error: %s", message)
			return
		LOGGER.error("Realtime engine error: %s", message)
		if isinstance(self.state, ActiveTurn):
			LOGGER.info("Aborting response %s after error", self.state.response_id)
			self.state = IdleTurn(aborted_response_id=self.state.response_id)
		await self._emit({"type": "error", "message": message})

	def _is_current(self, event: Dict[str, Any]) -> bool:
		"""True if the event belongs to the active response."""
		state = self.state
		if not isinstance(state, ActiveTurn):
			return False
		rid = response_id(event)
		return rid is None or rid == state.response_id

	def _is_aborted(self, event: Dict[str, Any]) -> bool:
		"""True if the event belongs to a response an engine error ended."""
		state = self.state
		if not isinstance(state, IdleTurn) or state.aborted_response_id is None:
			return False
		rid = response_id(event)
		return rid is None or rid == state.aborted_response_id

	# ------------------------------------------------------------------
	# Persistence and lifecycle helpers
	# ------------------------------------------------------------------

	def _spawn_save(self) -> Optional[asyncio.Task]:
		"""Start a forced save of the current transcript in the background."""
		if not self.has_conversation or not len(self.transcript):
			return None
		task = asyncio.create_task(
			self._force_save(self.username, self.conversation_id, self.session_id, self.transcript.snapshot())
		)
		self._saves.add(task)
		task.add_done_callback(self._saves.discard)
		return task

	async def _force_save(
		self,
		username: str,
		conversation_id: str,
		session_id: Optional[str],
		messages: List[TranscriptMessage],
	) -> str:
		outcome = await self._store.upsert(username, conversation_id, messages)
		if session_id and outcome != FAILED:
			self._registry.record_save(session_id, len(messages))
		return outcome

	def _start_autosave(self) -> None:
		self._autosave_task = asyncio.create_task(self._autosave_loop())

	def _cancel_autosave(self) -> None:
		task, self._autosave_task = self._autosave_task, None
		if task is not None:
			task.cancel()

	async def _autosave_loop(self) -> None:
		while True:
			await asyncio.sleep(self._settings.autosave_interval_seconds)
			count = len(self.transcript)
			if not count or not self.has_conversation or not self.session_id:
				continue
			if not self._registry.should_save(self.session_id, count):
				continue
			outcome = await self._store.upsert(self.username, self.conversation_id, self.transcript.snapshot())
			if outcome == FAILED:
				self._registry.record_failed_save(self.session_id, count)

	async def _shutdown_upstream(self) -> None:
		pump, self._pump_task = self._pump_task, None
		if pump is not None and not pump.done():
			pump.cancel()
			with contextlib.suppress(asyncio.CancelledError):
				await pump
		upstream, self.upstream = self.upstream, None
		if upstream is not None:
			await upstream.close()
