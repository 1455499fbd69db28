"""
Test fixtures and helper functions for Agent Monitor tests.

Provides controllable clocks, event recorders and sample terminal output.
Test modules import these after putting the tests directory on sys.path.
"""

import os
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple


# Lines as the Claude CLI prints them
SAMPLE_AGENT_SPAWN = "● database-expert (optimize query performance)"
SAMPLE_TOOL_START = "[Tool: Read]"
SAMPLE_TOOL_SUCCESS = "Tool Read completed successfully"


class FakeClock:
    """datetime clock for the registry that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeTimer:
    """Epoch-seconds clock for the stream analyzer."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class EventRecorder:
    """Subscribes to channels on a bus and keeps every emission in order."""

    def __init__(self, bus, *channels: str):
        self.records: List[Tuple[str, tuple]] = []
        for channel in channels:
            bus.on(channel, self._listener(channel))

    def _listener(self, channel: str):
        def listener(*args: Any):
            self.records.append((channel, args))
        return listener

    def channels(self) -> List[str]:
        return [channel for channel, _ in self.records]

    def of(self, channel: str) -> List[tuple]:
        return [args for name, args in self.records if name == channel]


def make_db_path(temp_dir: str) -> str:
    """State database path inside a temp directory."""
    return os.path.join(temp_dir, 'state.sqlite3')
