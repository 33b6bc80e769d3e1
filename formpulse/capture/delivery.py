"""
Client-side batching of capture events.

Events queue in memory; a debounce timer (reset on every enqueue) flushes them
as one batch from a worker thread. Page life-cycle signals flush synchronously
so a leaving visitor's last events still go out. Each batch is offered to an
ordered list of endpoints and the first one that accepts it wins; if all
refuse, the batch is dropped.
"""
from __future__ import annotations
import asyncio
import base64
import json
import logging
import urllib.request
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from ..events import Event, encode_batch

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.3
SEND_TIMEOUT = 2.0

Transport = Callable[[str, Dict[str, Any]], None]


def _post(url: str, body: bytes, content_type: str) -> None:
    req = urllib.request.Request(url, data=body, method="POST",
                                 headers={"Content-Type": content_type})
    with urllib.request.urlopen(req, timeout=SEND_TIMEOUT) as r:
        r.read()


def send_beacon(url: str, payload: Dict[str, Any]) -> None:
    # text/plain base64 body: no preflight, and opaque to filter lists
    _post(url, base64.b64encode(json.dumps(payload).encode("utf-8")), "text/plain")


def send_json(url: str, payload: Dict[str, Any]) -> None:
    _post(url, json.dumps(payload).encode("utf-8"), "application/json")


Endpoint = Union[str, Tuple[str, Transport]]


class DeliveryBuffer:
    def __init__(self, project_id: str, session_id: str, endpoints: Sequence[Endpoint],
                 debounce: float = DEBOUNCE_SECONDS,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.project_id = project_id
        self.session_id = session_id
        self.routes: List[Tuple[str, Transport]] = [
            (e, send_beacon) if isinstance(e, str) else (e[0], e[1]) for e in endpoints
        ]
        self.debounce = debounce
        self._loop = loop
        self._queue: List[Event] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._inflight: Set[asyncio.Future] = set()
        self._document = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    def enqueue(self, event: Event) -> None:
        self._queue.append(event)
        self._schedule()

    def _running_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        if self._loop is not None:
            return self._loop
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def _schedule(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        loop = self._running_loop()
        # without a loop only life-cycle flushes deliver
        if loop is not None:
            self._timer = loop.call_later(self.debounce, self._on_timer)

    def _take(self) -> List[Event]:
        batch, self._queue = self._queue, []
        return batch

    def _on_timer(self) -> None:
        self._timer = None
        batch = self._take()
        if not batch:
            return
        fut = self._running_loop().run_in_executor(None, self._transmit, batch)
        self._inflight.add(fut)
        fut.add_done_callback(self._inflight.discard)

    def flush_now(self) -> Optional[str]:
        """Send whatever is queued, synchronously. Returns the accepting URL."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch = self._take()
        if not batch:
            return None
        return self._transmit(batch)

    def _transmit(self, batch: List[Event]) -> Optional[str]:
        payload = encode_batch(self.project_id, self.session_id, batch)
        for url, send in self.routes:
            try:
                send(url, payload)
                return url
            except Exception as e:
                logger.debug("delivery to %s failed: %r", url, e)
        logger.debug("dropping batch of %d events: no endpoint accepted it", len(batch))
        return None

    async def drain(self) -> None:
        """Wait for timer-driven sends already handed to worker threads."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # --- page life-cycle ---

    def _on_hidden(self, ev) -> None:
        if self._document is not None and self._document.visibility_state == "hidden":
            self.flush_now()

    def _on_leave(self, ev) -> None:
        self.flush_now()

    def attach(self, document, leave: bool = True) -> None:
        """Flush on hide, and on pagehide/beforeunload unless ``leave`` is False
        (an owner that queues its own last events flushes those itself)."""
        self._document = document
        if leave:
            document.window.add_event_listener("pagehide", self._on_leave)
            document.window.add_event_listener("beforeunload", self._on_leave)
        document.add_event_listener("visibilitychange", self._on_hidden)

    def detach(self) -> None:
        doc, self._document = self._document, None
        if doc is None:
            return
        doc.window.remove_event_listener("pagehide", self._on_leave)
        doc.window.remove_event_listener("beforeunload", self._on_leave)
        doc.remove_event_listener("visibilitychange", self._on_hidden)
