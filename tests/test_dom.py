import asyncio

import pytest

from formpulse.capture.dom import Document, Element


def _page():
    doc = Document()
    doc.body.append(Element("form", {"id": "signup", "class": "lead big", "name": "signup"}, [
        Element("input", {"name": "email", "type": "email"}),
        Element("textarea", {"name": "notes"}),
        Element("select", {"name": "plan"}),
        Element("button", {"type": "submit"}),
    ]))
    doc.body.append(Element("form", {"data-track": "no"}))
    return doc


@pytest.mark.parametrize("selector, count", [
    ("form", 2),
    ("#signup", 1),
    (".lead", 1),
    ("form.big", 1),
    ("[data-track]", 1),
    ("[data-track=no]", 1),
    ('form[data-track="yes"]', 0),
    ("input, textarea, select", 3),
    ("*", 6),
])
def test_selectors(selector, count):
    assert len(_page().query_selector_all(selector)) == count


def test_unsupported_selector_raises():
    with pytest.raises(ValueError):
        _page().query_selector_all("form > input")


def test_focus_moves_and_blurs_previous():
    doc = _page()
    email, notes = doc.query_selector_all("input, textarea")
    seen = []
    email.add_event_listener("blur", lambda e: seen.append(("blur", e.target)))
    notes.add_event_listener("focus", lambda e: seen.append(("focus", e.target)))
    doc.focus(email)
    doc.focus(notes)
    assert seen == [("blur", email), ("focus", notes)]
    assert doc.active_element is notes


def test_listener_registered_once():
    el = Element("input")
    hits = []
    fn = hits.append
    el.add_event_listener("input", fn)
    el.add_event_listener("input", fn)
    el.dispatch_event("input")
    assert len(hits) == 1


def test_unload_fires_lifecycle_in_order():
    doc = Document()
    order = []
    doc.window.add_event_listener("beforeunload", lambda e: order.append("beforeunload"))
    doc.window.add_event_listener("pagehide", lambda e: order.append("pagehide"))
    doc.add_event_listener("visibilitychange", lambda e: order.append(doc.visibility_state))
    doc.unload()
    assert order == ["beforeunload", "pagehide", "hidden"]


def test_observer_yields_inserted_nodes():
    async def run():
        doc = Document()
        obs = doc.observe()
        form = doc.body.append(Element("form"))
        node = await asyncio.wait_for(obs.__anext__(), 1)
        obs.disconnect()
        doc.body.append(Element("div"))
        with pytest.raises(StopAsyncIteration):
            await obs.__anext__()
        return node, form

    node, form = asyncio.run(run())
    assert node is form
