"""
Collector-side decoding: turn whatever a capture agent managed to send into Events.

Every shape the agents have ever sent is accepted:
  - batched   {projectId, sessionId, events: [{type, fieldName, duration, occurredAt}]}
              (short keys {p, s, d: [{evt, fld, dur, t}]} from the beacon agent)
  - single    {project_id, session_id, event_type, field_name, duration}
              (pixel keys {pid|i, sid|s, t|e, f|n, d})
  - a JSON array of single events
Bodies may be JSON, base64(JSON) sent as text/plain, or form-urlencoded.
Records are validated one by one; a bad record never sinks its batch.
"""
from __future__ import annotations
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import parse_qsl

from pydantic import ValidationError

from .events import Event, utcnow
from .store import EventStore

logger = logging.getLogger(__name__)

PROJECT_KEYS = ("projectId", "project_id", "pid", "i", "p", "tenant")
SESSION_KEYS = ("sessionId", "session_id", "sid", "s", "session")
BATCH_KEYS = ("events", "d")

# inside a batch `t` is the client timestamp
ITEM_KEYS = {
    "type": ("type", "event_type", "evt"),
    "fieldName": ("fieldName", "field_name", "fld"),
    "duration": ("duration", "dur"),
    "occurredAt": ("occurredAt", "timestamp", "t"),
}
# in a flat single event `t` is the type and `d` the duration
SINGLE_KEYS = {
    "type": ("type", "event_type", "evt", "t", "e"),
    "fieldName": ("fieldName", "field_name", "fld", "f", "n"),
    "duration": ("duration", "dur", "d"),
    "occurredAt": ("occurredAt", "timestamp", "ts"),
}


@dataclass
class IngestResult:
    events: List[Event] = field(default_factory=list)
    dropped: int = 0

    @property
    def accepted(self) -> int:
        return len(self.events)


def _pick(src: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for k in keys:
        v = src.get(k)
        if v is not None and v != "":
            return v
    return None


def _json_or_none(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def decode_body(raw: bytes, content_type: Optional[str] = None) -> Any:
    """Parse a request body; returns None when nothing usable is in it."""
    ct = (content_type or "").lower()
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    if "application/x-www-form-urlencoded" in ct:
        return dict(parse_qsl(text, keep_blank_values=True))

    parsed = _json_or_none(text)
    if parsed is not None:
        return parsed

    # beacon transport: text/plain carrying base64(JSON)
    try:
        decoded = base64.b64decode(text, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        decoded = None
    if decoded:
        parsed = _json_or_none(decoded)
        if parsed is not None:
            return parsed

    # sendBeacon with URLSearchParams arrives without a usable content-type
    if "=" in text:
        pairs = parse_qsl(text, keep_blank_values=True)
        if pairs:
            return dict(pairs)
    return None


def _single(src: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(src, Mapping):
        return None
    rec = {"projectId": _pick(src, PROJECT_KEYS), "sessionId": _pick(src, SESSION_KEYS)}
    for name, keys in SINGLE_KEYS.items():
        rec[name] = _pick(src, keys)
    return rec


def _batch_item(envelope: Mapping[str, Any], item: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(item, Mapping):
        return None
    rec = {"projectId": _pick(envelope, PROJECT_KEYS), "sessionId": _pick(envelope, SESSION_KEYS)}
    for name, keys in ITEM_KEYS.items():
        rec[name] = _pick(item, keys)
    return rec


def normalize(payload: Any, received_at: Optional[datetime] = None,
              max_events: int = 500) -> IngestResult:
    """Map a decoded payload onto Events, dropping invalid records individually."""
    received_at = received_at or utcnow()
    result = IngestResult()

    if isinstance(payload, list):
        candidates = [_single(item) for item in payload]
    elif isinstance(payload, Mapping):
        items = _pick(payload, BATCH_KEYS)
        if isinstance(items, list):
            candidates = [_batch_item(payload, item) for item in items]
        else:
            candidates = [_single(payload)]
    else:
        logger.debug("ignoring undecodable payload of type %s", type(payload).__name__)
        return result

    if len(candidates) > max_events:
        result.dropped += len(candidates) - max_events
        candidates = candidates[:max_events]

    for rec in candidates:
        if rec is None:
            result.dropped += 1
            continue
        rec["receivedAt"] = received_at
        try:
            result.events.append(Event.model_validate(rec))
        except ValidationError as e:
            result.dropped += 1
            logger.debug("dropping record: %s", "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()))
    return result


def persist(store: EventStore, events: List[Event]) -> None:
    """Append to the store; failures stay local to this process."""
    if not events:
        return
    try:
        n = store.insert(events)
        logger.debug("stored %d events", n)
    except Exception:
        logger.exception("persisting %d events failed; batch lost", len(events))
