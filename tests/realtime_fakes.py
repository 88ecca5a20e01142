"""In-memory stand-ins for the realtime engine and the transcript store."""

import asyncio
from pathlib import Path

from services.realtime.errors import UpstreamConnectionError
from utils.relay_config import RelaySettings


def make_settings(database_dir="/tmp/relay-tests", **overrides):
    values = {
        "openai_api_key": "test-key",
        "database_dir": Path(database_dir),
        "autosave_interval_seconds": 3600,
        "save_retry_delay_seconds": 0,
        "close_save_timeout_seconds": 1,
    }
    values.update(overrides)
    return RelaySettings(**values)


class FakeUpstream:
    """Records everything the bridge sends; events are fed by the test."""

    def __init__(self, fail_connect=False):
        self.fail_connect = fail_connect
        self.is_open = False
        self.session = None
        self.greetings = []
        self.history_items = []
        self.cancels = 0
        self.audio = []
        self.closed = False
        self._queue = asyncio.Queue()

    async def connect(self):
        if self.fail_connect:
            raise UpstreamConnectionError("handshake refused")
        self.is_open = True

    async def update_session(self, session):
        self.session = session
        return True

    async def send_greeting(self, text):
        self.greetings.append(text)
        return True

    async def add_history_item(self, role, text):
        self.history_items.append((role, text))
        return True

    async def cancel_response(self):
        self.cancels += 1
        return True

    async def append_audio(self, audio_b64):
        self.audio.append(audio_b64)
        return True

    def push(self, event):
        self._queue.put_nowait(event)

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def close(self):
        self.is_open = False
        self.closed = True
        self._queue.put_nowait(None)


class FakeStore:
    """Transcript store double that remembers every upserted snapshot."""

    def __init__(self, history=None, fail=False):
        self.history = list(history or [])
        self.fail = fail
        self.outcome = "inserted"
        self.saved = []

    def cached_history(self, username, conversation_id):
        return []

    async def read(self, username, conversation_id):
        return list(self.history)

    async def upsert(self, username, conversation_id, messages):
        if self.fail:
            raise RuntimeError("store offline")
        self.saved.append(list(messages))
        return self.outcome
