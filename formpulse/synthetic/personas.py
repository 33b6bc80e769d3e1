from __future__ import annotations
import time, random
from typing import Dict, List, Optional

# field layout of the demo signup form
FIELDS = ["email", "name", "company", "phone", "password"]


def _sid(prefix: str, t0: float) -> str:
    return f"{prefix}_{int(t0 * 1000)}_{random.randint(0, 10**9)}"


def _batch(project_id: str, sid: str, events: List[Dict], t0: float) -> Dict:
    return {"projectId": project_id, "sessionId": sid, "events": events,
            "sentAt": events[-1]["occurredAt"] if events else int(t0 * 1000)}


def _visit(ev: List[Dict], field: str, t: float, dwell: float, keys: int) -> float:
    """focus, `keys` inputs, blur; returns time after blur (seconds)."""
    ev.append({"type": "focus", "fieldName": field, "occurredAt": int(t * 1000)})
    for k in range(keys):
        ev.append({"type": "input", "fieldName": field,
                   "occurredAt": int((t + dwell * (k + 1) / (keys + 1)) * 1000)})
    ev.append({"type": "blur", "fieldName": field, "duration": int(dwell * 1000),
               "occurredAt": int((t + dwell) * 1000)})
    return t + dwell + random.uniform(0.1, 0.4)


def completer(project_id="demo", t0: Optional[float] = None) -> Dict:
    """Fills every field at a steady pace, then submits."""
    t0 = t0 or time.time(); t = t0; ev: List[Dict] = []
    for f in FIELDS:
        t = _visit(ev, f, t, random.uniform(1.5, 4.0), random.randint(4, 12))
    ev.append({"type": "submit", "fieldName": "signup", "occurredAt": int(t * 1000)})
    return _batch(project_id, _sid("s_completer", t0), ev, t0)


def abandoner(project_id="demo", t0: Optional[float] = None, stuck_on="phone") -> Dict:
    """Fills the form up to `stuck_on`, focuses it, and leaves the page."""
    t0 = t0 or time.time(); t = t0; ev: List[Dict] = []
    for f in FIELDS[:FIELDS.index(stuck_on)]:
        t = _visit(ev, f, t, random.uniform(1.5, 4.0), random.randint(4, 12))
    ev.append({"type": "focus", "fieldName": stuck_on, "occurredAt": int(t * 1000)})
    stall = random.uniform(3.0, 8.0)
    end = t + stall
    ev += [
        {"type": "abandon", "fieldName": "page", "duration": int((end - t0) * 1000),
         "occurredAt": int(end * 1000)},
        {"type": "abandon", "fieldName": stuck_on, "duration": int(stall * 1000),
         "occurredAt": int(end * 1000)},
    ]
    return _batch(project_id, _sid("s_abandoner", t0), ev, t0)


def skipper(project_id="demo", t0: Optional[float] = None, skipped="company") -> Dict:
    """Tabs through `skipped` without typing, completes the rest."""
    t0 = t0 or time.time(); t = t0; ev: List[Dict] = []
    for f in FIELDS:
        keys = 0 if f == skipped else random.randint(4, 12)
        t = _visit(ev, f, t, random.uniform(0.3, 0.8) if f == skipped else random.uniform(1.5, 4.0), keys)
    ev.append({"type": "submit", "fieldName": "signup", "occurredAt": int(t * 1000)})
    return _batch(project_id, _sid("s_skipper", t0), ev, t0)


def hesitator(project_id="demo", t0: Optional[float] = None, slow="password") -> Dict:
    """Spends a long time on `slow` before finishing."""
    t0 = t0 or time.time(); t = t0; ev: List[Dict] = []
    for f in FIELDS:
        dwell = random.uniform(12.0, 25.0) if f == slow else random.uniform(1.5, 4.0)
        t = _visit(ev, f, t, dwell, random.randint(4, 12))
    ev.append({"type": "submit", "fieldName": "signup", "occurredAt": int(t * 1000)})
    return _batch(project_id, _sid("s_hesitator", t0), ev, t0)


PERSONAS = {"completer": completer, "abandoner": abandoner,
            "skipper": skipper, "hesitator": hesitator}
