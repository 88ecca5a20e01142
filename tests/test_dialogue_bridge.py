"""Tests for the per-connection dialogue bridge state machine."""

import asyncio
import unittest

from models.conversation_models import (
    ASSISTANT_ROLE,
    USER_ROLE,
    ActiveTurn,
    IdleTurn,
    InterruptedTurn,
    TranscriptMessage,
)
from services.realtime.conversation_reconciler import StartupMode
from services.realtime.dialogue_bridge import UPSTREAM_CONNECT_ERROR, DialogueBridge
from services.realtime.prompts import resume_instructions
from services.realtime.session_registry import SessionRegistry

from realtime_fakes import FakeStore, FakeUpstream, make_settings


def created(rid):
    return {"type": "response.created", "response": {"id": rid}}


def delta(rid, text):
    return {"type": "response.audio_transcript.delta", "response_id": rid, "delta": text}


def transcript_done(rid, text):
    return {"type": "response.audio_transcript.done", "response_id": rid, "transcript": text}


def done(rid, transcript=None):
    output = []
    if transcript is not None:
        output = [{"type": "message", "content": [{"type": "audio", "transcript": transcript}]}]
    return {"type": "response.done", "response": {"id": rid, "output": output}}


def user_said(text):
    return {"type": "conversation.item.input_audio_transcription.completed", "transcript": text}


SPEECH_STARTED = {"type": "input_audio_buffer.speech_started"}


class BridgeTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.emitted = []
        self.upstream = FakeUpstream()
        self.store = FakeStore()
        self.registry = SessionRegistry(debounce_seconds=1.0, eviction_delay=60.0)
        self.settings = make_settings()
        self.bridge = self._make_bridge()

    async def asyncTearDown(self):
        await self.bridge.close()
        self.registry.shutdown()

    def _make_bridge(self, **settings_overrides):
        settings = make_settings(**settings_overrides) if settings_overrides else self.settings

        async def emit(payload):
            self.emitted.append(payload)

        return DialogueBridge(self.store, self.registry, lambda: self.upstream, emit, settings)

    async def start(self, **kwargs):
        params = {"is_reconnection": False, "has_messages": False}
        params.update(kwargs)
        return await self.bridge.on_start("alice", "session-1", "conv-1", **params)

    async def feed(self, *events):
        for event in events:
            await self.bridge.on_upstream_event(event)

    def emitted_types(self):
        return [payload["type"] for payload in self.emitted]


class TestStartup(BridgeTestCase):
    async def test_first_connection_greets_once(self):
        mode = await self.start()
        self.assertIs(mode, StartupMode.GREET)
        self.assertEqual(len(self.upstream.greetings), 1)
        self.assertEqual(self.upstream.history_items, [])
        self.assertEqual(self.emitted_types(), ["connection_ready"])

    async def test_resume_replays_history_without_greeting(self):
        self.store.history = [
            TranscriptMessage(0, ASSISTANT_ROLE, "Hi, how can I help?", "t0"),
            TranscriptMessage(1, USER_ROLE, "Tell me a joke", "t1"),
            TranscriptMessage(2, ASSISTANT_ROLE, "Why did the chicken...", "t2", interrupted=True),
        ]
        mode = await self.start(is_reconnection=True, has_messages=True)

        self.assertIs(mode, StartupMode.REPLAY)
        self.assertEqual(self.upstream.greetings, [])
        self.assertEqual(
            self.upstream.history_items,
            [
                (ASSISTANT_ROLE, "Hi, how can I help?"),
                (USER_ROLE, "Tell me a joke"),
                (ASSISTANT_ROLE, "Why did the chicken..."),
            ],
        )
        self.assertEqual(self.upstream.session["instructions"], resume_instructions())
        self.assertIn({"type": "history_restored", "count": 3}, self.emitted)
        self.assertEqual(self.bridge.transcript.next_sequence, 3)

    async def test_reconnection_without_history_resumes_silently(self):
        mode = await self.start(is_reconnection=True)
        self.assertIs(mode, StartupMode.SILENT)
        self.assertEqual(self.upstream.greetings, [])
        self.assertEqual(self.upstream.history_items, [])

    async def test_connect_failure_is_reported_to_client(self):
        self.upstream = FakeUpstream(fail_connect=True)
        mode = await self.start()
        self.assertIsNone(mode)
        self.assertEqual(self.emitted, [{"type": "error", "message": UPSTREAM_CONNECT_ERROR}])
        self.assertIsNone(self.bridge.upstream)


class TestAssistantTurns(BridgeTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.start()
        self.emitted.clear()

    async def test_greeting_produces_single_assistant_message(self):
        await self.feed(
            created("r1"),
            delta("r1", "Hello"),
            delta("r1", " there"),
            transcript_done("r1", "Hello there!"),
            done("r1"),
        )
        await self.bridge.wait_for_saves()

        messages = self.bridge.transcript.messages
        self.assertEqual(len(messages), 1)
        self.assertEqual(messages[0].sequence, 0)
        self.assertEqual(messages[0].role, ASSISTANT_ROLE)
        self.assertEqual(messages[0].content, "Hello there!")
        self.assertFalse(messages[0].interrupted)
        self.assertIsInstance(self.bridge.state, IdleTurn)
        self.assertEqual(
            self.emitted_types(),
            [
                "response_creating",
                "assistant_transcript_delta",
                "assistant_transcript_delta",
                "assistant_transcript_complete",
                "response_complete",
            ],
        )
        self.assertEqual(len(self.store.saved[-1]), 1)

    async def test_streamed_text_longer_than_complete_transcript_wins(self):
        await self.feed(
            created("r1"),
            delta("r1", "Hi there friend"),
            transcript_done("r1", "Hi"),
            done("r1"),
        )
        self.assertEqual(self.bridge.transcript.messages[-1].content, "Hi there friend")

    async def test_final_transcript_longer_than_deltas_wins(self):
        await self.feed(
            created("r1"),
            {"type": "response.text.delta", "response_id": "r1", "delta": "Hi"},
            done("r1", transcript="Hi there, how are you?"),
        )
        self.assertEqual(self.bridge.transcript.messages[-1].content, "Hi there, how are you?")

    async def test_new_response_while_active_discards_stale_accumulator(self):
        await self.feed(
            created("r1"),
            delta("r1", "old words"),
            created("r2"),
            delta("r1", " late"),
            delta("r2", "new words"),
            done("r2"),
        )
        messages = self.bridge.transcript.messages
        self.assertEqual([msg.content for msg in messages], ["new words"])

    async def test_audio_deltas_are_forwarded_only_for_current_response(self):
        await self.feed(
            created("r1"),
            {"type": "response.audio.delta", "response_id": "r1", "delta": "AAAA"},
            {"type": "response.audio.delta", "response_id": "r0", "delta": "BBBB"},
        )
        audio = [p["audio"] for p in self.emitted if p["type"] == "assistant_audio_delta"]
        self.assertEqual(audio, ["AAAA"])

    async def test_empty_response_creates_no_message(self):
        await self.feed(created("r1"), done("r1"))
        self.assertEqual(len(self.bridge.transcript), 0)
        self.assertIn("response_complete", self.emitted_types())


class TestInterruption(BridgeTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.start()
        self.emitted.clear()

    async def test_speech_during_active_turn_seals_interrupted_message(self):
        await self.feed(
            user_said("Tell me about rivers"),
            created("r1"),
            delta("r1", "Rivers are"),
            SPEECH_STARTED,
        )
        self.assertIsInstance(self.bridge.state, InterruptedTurn)
        self.assertEqual(self.upstream.cancels, 1)
        self.assertIn("response_interrupted", self.emitted_types())

        interrupted = self.bridge.transcript.messages[-1]
        self.assertTrue(interrupted.interrupted)
        self.assertEqual(interrupted.content, "Rivers are...")
        self.assertEqual(interrupted.sequence, 1)

        await self.feed(
            delta("r1", " long"),
            {"type": "response.audio.delta", "response_id": "r1", "delta": "AAAA"},
            transcript_done("r1", "Rivers are long"),
            done("r1", transcript="Rivers are long"),
            user_said("Actually, lakes"),
        )
        await self.bridge.wait_for_saves()

        messages = self.bridge.transcript.messages
        self.assertEqual([msg.role for msg in messages], [USER_ROLE, ASSISTANT_ROLE, USER_ROLE])
        self.assertEqual(sum(1 for msg in messages if msg.interrupted), 1)
        self.assertEqual(messages[1].content, "Rivers are...")
        self.assertEqual(messages[2].content, "Actually, lakes")
        self.assertNotIn("assistant_audio_delta", self.emitted_types())
        self.assertNotIn("assistant_transcript_complete", self.emitted_types())
        self.assertIsInstance(self.bridge.state, IdleTurn)
        self.assertEqual(len(self.store.saved[-1]), 3)

    async def test_speech_while_idle_does_not_interrupt(self):
        await self.feed(SPEECH_STARTED)
        self.assertEqual(self.upstream.cancels, 0)
        self.assertEqual(len(self.bridge.transcript), 0)

    async def test_cancelled_event_returns_to_idle(self):
        await self.feed(created("r1"), SPEECH_STARTED, {"type": "response.cancelled", "response_id": "r1"})
        self.assertIsInstance(self.bridge.state, IdleTurn)

    async def test_sequences_stay_gapless_across_mixed_turns(self):
        await self.feed(
            created("r1"), delta("r1", "Welcome"), done("r1"),
            user_said("hi"),
            created("r2"), delta("r2", "So"), SPEECH_STARTED,
            user_said("wait"),
            created("r3"), delta("r3", "Sure"), done("r3"),
        )
        sequences = [msg.sequence for msg in self.bridge.transcript.messages]
        self.assertEqual(sequences, list(range(5)))


class TestUpstreamErrors(BridgeTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.start()
        self.emitted.clear()

    async def test_transient_errors_are_swallowed(self):
        await self.feed(
            created("r1"),
            {"type": "error", "error": {"type": "invalid_request_error", "message": "Error committing input audio buffer: buffer too small."}},
            {"type": "error", "error": {"message": "Cancellation failed: no active response found"}},
        )
        self.assertNotIn("error", self.emitted_types())
        self.assertIsInstance(self.bridge.state, ActiveTurn)

    async def test_fatal_error_aborts_turn_without_transcript_entry(self):
        await self.feed(
            created("r1"),
            delta("r1", "Partial"),
            {"type": "error", "error": {"type": "server_error", "message": "Upstream exploded"}},
            delta("r1", " more"),
            done("r1"),
        )
        self.assertIn({"type": "error", "message": "Upstream exploded"}, self.emitted)
        self.assertIsInstance(self.bridge.state, IdleTurn)
        self.assertEqual(len(self.bridge.transcript), 0)

    async def test_complete_transcript_for_aborted_response_is_dropped(self):
        await self.feed(
            created("r1"),
            delta("r1", "Partial"),
            {"type": "error", "error": {"type": "server_error", "message": "Upstream exploded"}},
            transcript_done("r1", "Partial answer"),
        )
        self.assertNotIn("assistant_transcript_complete", self.emitted_types())

        await self.feed(transcript_done("r2", "Unrelated"))
        self.assertIn({"type": "assistant_transcript_complete", "text": "Unrelated"}, self.emitted)


class TestPersistenceLifecycle(BridgeTestCase):
    async def test_unclean_disconnect_drops_partial_assistant_turn(self):
        await self.start()
        await self.feed(user_said("Hello?"), created("r1"), delta("r1", "Half a thou"))
        await self.bridge.close()

        self.assertTrue(self.upstream.closed)
        final = self.store.saved[-1]
        self.assertEqual([(msg.role, msg.content) for msg in final], [(USER_ROLE, "Hello?")])

    async def test_emergency_save_flushes_and_never_raises(self):
        await self.start()
        await self.feed(user_said("Save me"))
        await self.bridge.wait_for_saves()
        saved_before = len(self.store.saved)

        await self.bridge.on_emergency_save()
        self.assertEqual(len(self.store.saved), saved_before + 1)

        self.store.fail = True
        await self.bridge.on_emergency_save()
        self.store.fail = False

    async def test_stop_with_new_session_evicts_and_closes_upstream(self):
        await self.start()
        await self.feed(user_said("Bye"))
        self.assertIn("session-1", self.registry)

        await self.bridge.on_stop(request_new_session=True)

        self.assertNotIn("session-1", self.registry)
        self.assertTrue(self.upstream.closed)
        self.assertEqual(self.store.saved[-1][-1].content, "Bye")
        self.assertFalse(await self.bridge.on_audio_frame("AAAA"))
        self.assertEqual(self.upstream.audio, [])

    async def test_stop_without_new_session_keeps_registry_entry(self):
        await self.start()
        await self.bridge.on_stop(request_new_session=False)
        self.assertIn("session-1", self.registry)

    async def test_audio_frames_forwarded_while_open(self):
        await self.start()
        self.assertTrue(await self.bridge.on_audio_frame("AAAA"))
        self.assertEqual(self.upstream.audio, ["AAAA"])

    async def test_upstream_events_are_pumped_in_order(self):
        await self.start()
        for event in (created("r1"), delta("r1", "One"), delta("r1", " two"), done("r1")):
            self.upstream.push(event)
        for _ in range(50):
            if len(self.bridge.transcript):
                break
            await asyncio.sleep(0.01)
        self.assertEqual(self.bridge.transcript.messages[0].content, "One two")

    async def test_autosave_skips_until_new_messages(self):
        self.bridge = self._make_bridge(autosave_interval_seconds=0.01)
        self.store.history = [
            TranscriptMessage(0, ASSISTANT_ROLE, "Hi", "t0"),
            TranscriptMessage(1, USER_ROLE, "Hello", "t1"),
        ]
        await self.start(is_reconnection=True, has_messages=True)

        await asyncio.sleep(0.05)
        self.assertEqual(self.store.saved, [])

        self.bridge.transcript.append(USER_ROLE, "unsaved line")
        await asyncio.sleep(0.05)
        self.assertEqual(len(self.store.saved), 1)
        self.assertEqual(len(self.store.saved[0]), 3)

        await asyncio.sleep(0.05)
        self.assertEqual(len(self.store.saved), 1)

    async def test_failed_force_save_is_not_recorded(self):
        await self.start()
        self.store.outcome = "failed"
        await self.feed(user_said("Hello?"))
        await self.bridge.wait_for_saves()

        self.assertEqual(len(self.store.saved), 1)
        self.assertTrue(self.registry.should_save("session-1", 1))

    async def test_autosave_retries_after_failed_save(self):
        self.bridge = self._make_bridge(autosave_interval_seconds=0.01)
        await self.start()
        self.store.outcome = "failed"
        self.bridge.transcript.append(USER_ROLE, "unsaved line")

        await asyncio.sleep(0.05)
        self.assertGreaterEqual(len(self.store.saved), 2)

        self.store.outcome = "inserted"
        await asyncio.sleep(0.05)
        attempts = len(self.store.saved)
        await asyncio.sleep(0.05)
        self.assertEqual(len(self.store.saved), attempts)


if __name__ == "__main__":
    unittest.main()
