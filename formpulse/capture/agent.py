"""
Form capture agent.

One instance per page load. It instruments every form matching ``form_selector``
(and the fields inside it), turns focus/blur/input/submit and page life-cycle
signals into ``Event`` records, and hands them to a ``DeliveryBuffer``.
Field values are never read.
"""
from __future__ import annotations
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set
from urllib.parse import urlsplit

from ..events import FORM_FIELD, PAGE_FIELD, Event, EventType
from .delivery import DeliveryBuffer, Endpoint, send_beacon, send_json
from .dom import Document, DomEvent, Element, MutationObserver, compile_selector
from .labels import resolve_field_label

logger = logging.getLogger(__name__)

FIELD_SELECTOR = "input, textarea, select"
TRACKED = "fpTracked"  # dataset marker on instrumented forms and fields


def new_session_id(clock: Callable[[], float] = time.time) -> str:
    return f"sess_{int(clock() * 1000)}_{random.randint(0, 10**9)}"


def loader_endpoints(loader: Element) -> List[Endpoint]:
    """Collector routes for a loader element, in fallback order.

    ``data-endpoints`` (comma or space separated URLs, sent as beacons) wins;
    otherwise the origin serving the loader script gets ``/v1`` as a beacon and
    ``/ingest`` as JSON.
    """
    listed = (loader.get("data-endpoints") or loader.get("data-endpoint") or "").replace(",", " ").split()
    if listed:
        return [(url, send_beacon) for url in listed]
    parts = urlsplit((loader.get("src") or "").strip())
    if parts.scheme in ("http", "https") and parts.netloc:
        origin = f"{parts.scheme}://{parts.netloc}"
        return [(origin + "/v1", send_beacon), (origin + "/ingest", send_json)]
    return []


@dataclass
class _Focus:
    label: str
    started: float


class CaptureAgent:
    def __init__(self, document: Document, project_id: str,
                 form_selector: str = "form",
                 endpoints: Sequence[Endpoint] = (),
                 buffer: Optional[DeliveryBuffer] = None,
                 clock: Callable[[], float] = time.time,
                 session_id: Optional[str] = None):
        if not project_id or not project_id.strip():
            raise ValueError("project_id is required")
        self.document = document
        self.project_id = project_id.strip()
        self.form_selector = form_selector or "form"
        self.clock = clock
        self.session_id = session_id or new_session_id(clock)
        self.buffer = buffer or DeliveryBuffer(self.project_id, self.session_id, endpoints)
        self.page_start = clock()
        self._focused: Dict[Element, _Focus] = {}
        self._submitted: Set[Element] = set()
        self._page_abandoned = False
        self._observer: Optional[MutationObserver] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._started = False

    @classmethod
    def from_loader(cls, document: Document, loader: Element, **kw) -> Optional["CaptureAgent"]:
        """Build and start an agent from its loader element's data attributes.

        Returns None, with nothing instrumented, when no project id is given
        or the form selector cannot be parsed. Endpoints come from
        ``data-endpoints`` or the loader's ``src`` origin unless passed in.
        """
        project_id = (loader.get("data-project-id") or loader.get("data-pid") or "").strip()
        if not project_id:
            logger.error("loader has no data-project-id; form capture disabled")
            return None
        selector = (loader.get("data-form-selector") or "").strip() or "form"
        try:
            compile_selector(selector)
        except ValueError as e:
            logger.error("bad data-form-selector %r (%s); form capture disabled", selector, e)
            return None
        if not kw.get("endpoints") and "buffer" not in kw:
            kw["endpoints"] = loader_endpoints(loader)
            if not kw["endpoints"]:
                logger.warning("loader has no data-endpoints or src origin; events will not be delivered")
        agent = cls(document, project_id, form_selector=selector, **kw)
        agent.start()
        return agent

    @property
    def submitted(self) -> bool:
        return bool(self._submitted)

    # --- lifecycle ---

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        # the agent flushes on leave itself, after its final abandons
        self.buffer.attach(self.document, leave=False)
        self.document.window.add_event_listener("pagehide", self._on_leave)
        self.document.window.add_event_listener("beforeunload", self._on_leave)
        if self.document.ready_state == "loading":
            self.document.add_event_listener("DOMContentLoaded", self._on_ready)
        else:
            self.discover()
        self._start_watch()

    def stop(self) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None
        if self._observer is not None:
            self._observer.disconnect()
            self._observer = None
        self.document.window.remove_event_listener("pagehide", self._on_leave)
        self.document.window.remove_event_listener("beforeunload", self._on_leave)
        self.document.remove_event_listener("DOMContentLoaded", self._on_ready)
        self.buffer.detach()
        self._started = False

    def _on_ready(self, ev: DomEvent) -> None:
        self.discover()

    def _start_watch(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running event loop; forms added later will not be instrumented")
            return
        self._observer = self.document.observe()
        self._watch_task = loop.create_task(self._watch(self._observer))

    async def _watch(self, observer: MutationObserver) -> None:
        async for node in observer:
            if node.document is self.document:
                self.discover()

    # --- discovery ---

    def discover(self) -> int:
        """Instrument forms (and their fields) not seen before; returns new form count."""
        added = 0
        for form in self.document.query_selector_all(self.form_selector):
            if form.dataset.get(TRACKED) != "1":
                form.dataset[TRACKED] = "1"
                form.add_event_listener("submit", self._on_submit)
                added += 1
            for field in form.query_selector_all(FIELD_SELECTOR):
                if field.dataset.get(TRACKED) != "1":
                    field.dataset[TRACKED] = "1"
                    field.add_event_listener("focus", self._on_focus)
                    field.add_event_listener("blur", self._on_blur)
                    field.add_event_listener("input", self._on_input)
                    field.add_event_listener("change", self._on_input)
        if added:
            logger.debug("instrumented %d new form(s)", added)
        return added

    # --- handlers ---

    def _on_focus(self, ev: DomEvent) -> None:
        label = resolve_field_label(ev.target.attrs)
        self._focused[ev.target] = _Focus(label, self.clock())
        self._emit(EventType.FOCUS, label)

    def _on_blur(self, ev: DomEvent) -> None:
        rec = self._focused.pop(ev.target, None)
        if rec is None:
            return
        self._emit(EventType.BLUR, rec.label, self._elapsed_ms(rec.started))

    def _on_input(self, ev: DomEvent) -> None:
        self._emit(EventType.INPUT, resolve_field_label(ev.target.attrs))

    def _on_submit(self, ev: DomEvent) -> None:
        form = ev.target
        if form in self._submitted:
            return
        self._submitted.add(form)
        self._emit(EventType.SUBMIT, form.get("name") or form.get("id") or FORM_FIELD)
        self._abandon_focused()
        self.buffer.flush_now()

    def _on_leave(self, ev: DomEvent) -> None:
        if not self._submitted and not self._page_abandoned:
            self._page_abandoned = True
            self._emit(EventType.ABANDON, PAGE_FIELD, self._elapsed_ms(self.page_start))
        self._abandon_focused()
        self.buffer.flush_now()

    def _abandon_focused(self) -> None:
        focused, self._focused = self._focused, {}
        for rec in focused.values():
            self._emit(EventType.ABANDON, rec.label, self._elapsed_ms(rec.started))

    # --- helpers ---

    def _elapsed_ms(self, since: float) -> int:
        return max(0, int(round((self.clock() - since) * 1000)))

    def _emit(self, type: EventType, field_name: str, duration: Optional[int] = None) -> None:
        self.buffer.enqueue(Event(
            project_id=self.project_id,
            session_id=self.session_id,
            type=type,
            field_name=field_name,
            duration=duration,
            occurred_at=datetime.fromtimestamp(self.clock(), tz=timezone.utc),
        ))
