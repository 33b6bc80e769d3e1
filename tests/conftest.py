import os

# must be set before formpulse.config is imported
os.environ.setdefault("FORMPULSE_STORE_BACKEND", "memory")

from datetime import datetime, timedelta, timezone

import pytest

from formpulse.events import Event


class FakeClock:
    def __init__(self, t=1_700_000_000.0):
        self.t = t

    def __call__(self):
        return self.t

    def advance(self, seconds):
        self.t += seconds


class RecordingBuffer:
    """Stands in for DeliveryBuffer: keeps every event, counts flushes."""

    def __init__(self):
        self.events = []
        self.flushes = 0
        self.document = None

    def enqueue(self, event):
        self.events.append(event)

    def flush_now(self):
        self.flushes += 1

    def attach(self, document, leave=True):
        self.document = document
        self.leave = leave

    def detach(self):
        self.document = None

    def kinds(self):
        return [(e.type.value, e.field_name) for e in self.events]


class RecordingTransport:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def __call__(self, url, payload):
        self.calls.append((url, payload))
        if self.fail:
            raise OSError(f"blocked: {url}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def buffer():
    return RecordingBuffer()


BASE = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_event(type, field=None, duration=None, session="s1", project="p1", at=BASE, offset_ms=0):
    return Event(
        project_id=project, session_id=session, type=type, field_name=field,
        duration=duration, occurred_at=at + timedelta(milliseconds=offset_ms),
        received_at=at + timedelta(milliseconds=offset_ms),
    )


@pytest.fixture
def ev():
    return make_event


@pytest.fixture
def transport():
    return RecordingTransport


@pytest.fixture
def base():
    return BASE
