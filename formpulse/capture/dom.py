"""
A small host DOM for the capture agent.

Only what form capture touches is modeled: elements with attributes and a
``dataset``, simple selectors, per-target listeners (no bubbling, like
focus/blur), document readiness and visibility, window life-cycle events, and
an asynchronous feed of inserted nodes for structural observation.
"""
from __future__ import annotations
import asyncio
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

Listener = Callable[["DomEvent"], Any]


@dataclass
class DomEvent:
    type: str
    target: Any


# --- selectors: tag, #id, .class, [attr], [attr=value], compounds, comma groups ---
_TAG = re.compile(r"\*|[a-zA-Z][\w-]*")
_PART = re.compile(
    r"#(?P<id>[\w-]+)"
    r"|\.(?P<cls>[\w-]+)"
    r"|\[(?P<attr>[\w-]+)(?:=(?P<q>[\"']?)(?P<val>[^\"'\]]*)(?P=q))?\]"
)
_cache: Dict[str, List[Tuple[Optional[str], list]]] = {}


def compile_selector(selector: str) -> List[Tuple[Optional[str], list]]:
    if selector in _cache:
        return _cache[selector]
    groups = []
    for raw in selector.split(","):
        part = raw.strip()
        if not part:
            raise ValueError(f"empty selector group in {selector!r}")
        m = _TAG.match(part)
        tag = m.group(0).lower() if m else None
        pos = m.end() if m else 0
        checks = []
        while pos < len(part):
            t = _PART.match(part, pos)
            if t is None:
                raise ValueError(f"unsupported selector {selector!r}")
            if t.group("id"):
                checks.append(("id", t.group("id")))
            elif t.group("cls"):
                checks.append(("class", t.group("cls")))
            else:
                checks.append(("attr", (t.group("attr"), t.group("val"))))
            pos = t.end()
        groups.append((None if tag == "*" else tag, checks))
    _cache[selector] = groups
    return groups


class EventTarget:
    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def add_event_listener(self, type: str, fn: Listener) -> None:
        if fn not in self._listeners[type]:
            self._listeners[type].append(fn)

    def remove_event_listener(self, type: str, fn: Listener) -> None:
        if fn in self._listeners[type]:
            self._listeners[type].remove(fn)

    def listener_count(self, type: str) -> int:
        return len(self._listeners[type])

    def dispatch_event(self, type: str) -> DomEvent:
        ev = DomEvent(type, self)
        for fn in list(self._listeners[type]):
            fn(ev)
        return ev


class Element(EventTarget):
    def __init__(self, tag: str, attrs: Optional[Dict[str, str]] = None,
                 children: Optional[List["Element"]] = None, value: str = ""):
        super().__init__()
        self.tag = tag.lower()
        self.attrs = dict(attrs or {})
        self.dataset: Dict[str, str] = {}
        self.value = value
        self.parent: Optional[Element] = None
        self.children: List[Element] = []
        self.document: Optional[Document] = None
        for c in children or ():
            self.append(c)

    def __repr__(self):
        extra = "".join(f" {k}={v!r}" for k, v in self.attrs.items())
        return f"<{self.tag}{extra}>"

    def get(self, name: str) -> Optional[str]:
        return self.attrs.get(name)

    def append(self, child: "Element") -> "Element":
        child.parent = self
        self.children.append(child)
        if self.document is not None:
            child._attach(self.document)
            self.document._inserted(child)
        return child

    def _attach(self, document: "Document") -> None:
        self.document = document
        for c in self.children:
            c._attach(document)

    def descendants(self) -> Iterator["Element"]:
        for c in self.children:
            yield c
            yield from c.descendants()

    def closest(self, selector: str) -> Optional["Element"]:
        el = self
        while el is not None:
            if el.matches(selector):
                return el
            el = el.parent
        return None

    def matches(self, selector: str) -> bool:
        for tag, checks in compile_selector(selector):
            if tag is not None and tag != self.tag:
                continue
            if all(self._check(kind, arg) for kind, arg in checks):
                return True
        return False

    def _check(self, kind: str, arg) -> bool:
        if kind == "id":
            return self.attrs.get("id") == arg
        if kind == "class":
            return arg in (self.attrs.get("class") or "").split()
        name, val = arg
        if name not in self.attrs:
            return False
        return val is None or self.attrs[name] == val

    def query_selector_all(self, selector: str) -> List["Element"]:
        compile_selector(selector)
        return [d for d in self.descendants() if d.matches(selector)]


class MutationObserver:
    """Async iterator over nodes inserted into a document after observe()."""

    def __init__(self, document: "Document"):
        self._document = document
        self._queue: "asyncio.Queue[Element]" = asyncio.Queue()
        self.connected = True

    def _push(self, node: Element) -> None:
        if self.connected:
            self._queue.put_nowait(node)

    def disconnect(self) -> None:
        self.connected = False
        self._document._forget(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Element:
        if not self.connected and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()


class Document(EventTarget):
    def __init__(self, ready_state: str = "complete"):
        super().__init__()
        self.ready_state = ready_state
        self.visibility_state = "visible"
        self.window = EventTarget()
        self.active_element: Optional[Element] = None
        self._observers: List[MutationObserver] = []
        self.body = Element("body")
        self.body._attach(self)

    def query_selector_all(self, selector: str) -> List[Element]:
        return self.body.query_selector_all(selector)

    def observe(self) -> MutationObserver:
        obs = MutationObserver(self)
        self._observers.append(obs)
        return obs

    def _forget(self, obs: MutationObserver) -> None:
        if obs in self._observers:
            self._observers.remove(obs)

    def _inserted(self, node: Element) -> None:
        for obs in list(self._observers):
            obs._push(node)

    # --- host driving: what a browser would do on user action ---

    def finish_loading(self) -> None:
        self.ready_state = "interactive"
        self.dispatch_event("DOMContentLoaded")

    def focus(self, el: Element) -> None:
        if self.active_element is el:
            return
        if self.active_element is not None:
            self.blur(self.active_element)
        self.active_element = el
        el.dispatch_event("focus")

    def blur(self, el: Element) -> None:
        if self.active_element is el:
            self.active_element = None
        el.dispatch_event("blur")

    def type_into(self, el: Element, text: str) -> None:
        for ch in text:
            el.value += ch
            el.dispatch_event("input")

    def change(self, el: Element, value: str) -> None:
        el.value = value
        el.dispatch_event("change")

    def submit(self, form: Element) -> None:
        form.dispatch_event("submit")

    def hide(self) -> None:
        self.visibility_state = "hidden"
        self.dispatch_event("visibilitychange")

    def show(self) -> None:
        self.visibility_state = "visible"
        self.dispatch_event("visibilitychange")

    def unload(self) -> None:
        # browser order: beforeunload, pagehide, visibilitychange
        self.window.dispatch_event("beforeunload")
        self.window.dispatch_event("pagehide")
        self.hide()
