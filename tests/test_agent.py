import asyncio
import base64
import json
import logging
import re

import pytest

from formpulse.capture import delivery
from formpulse.capture.agent import TRACKED, CaptureAgent, loader_endpoints, new_session_id
from formpulse.capture.delivery import send_beacon, send_json
from formpulse.capture.dom import Document, Element


def signup_page(ready_state="complete"):
    doc = Document(ready_state=ready_state)
    doc.body.append(Element("form", {"name": "signup"}, [
        Element("input", {"name": "email", "type": "email"}),
        Element("input", {"placeholder": "Phone", "type": "tel"}),
        Element("select", {"id": "plan"}),
    ]))
    return doc


def fields(doc):
    return doc.query_selector_all("input, textarea, select")


@pytest.fixture
def page():
    return signup_page()


@pytest.fixture
def agent(page, buffer, clock):
    a = CaptureAgent(page, "proj_1", buffer=buffer, clock=clock, session_id="sess_1")
    a.start()
    return a


def test_session_id_shape(clock):
    assert re.fullmatch(r"sess_\d+_\d+", new_session_id(clock))


def test_project_id_required(page, buffer):
    with pytest.raises(ValueError):
        CaptureAgent(page, "  ", buffer=buffer)


def test_discovery_is_idempotent(agent, page, buffer):
    assert agent.discover() == 0
    assert agent.discover() == 0
    email = fields(page)[0]
    assert email.listener_count("focus") == 1
    page.focus(email)
    assert buffer.kinds() == [("focus", "email")]


def test_forms_and_fields_are_marked(agent, page):
    form = page.query_selector_all("form")[0]
    assert form.dataset[TRACKED] == "1"
    assert all(f.dataset[TRACKED] == "1" for f in fields(page))


def test_blur_carries_focus_duration(agent, page, buffer, clock):
    email = fields(page)[0]
    page.focus(email)
    clock.advance(2.5)
    page.blur(email)
    focus, blur = buffer.events
    assert (blur.type.value, blur.field_name, blur.duration) == ("blur", "email", 2500)
    assert focus.duration is None
    assert blur.session_id == "sess_1" and blur.project_id == "proj_1"


def test_blur_without_focus_is_ignored(agent, page, buffer):
    page.blur(fields(page)[0])
    assert buffer.events == []


def test_input_and_change_never_read_values(agent, page, buffer):
    email, phone, plan = fields(page)
    page.focus(email)
    page.type_into(email, "me@secret.org")
    page.change(plan, "enterprise")
    assert buffer.kinds()[:2] == [("focus", "email"), ("input", "email")]
    assert buffer.kinds()[-1] == ("input", "plan")
    assert all(e.duration is None for e in buffer.events if e.type.value == "input")
    dumped = " ".join(e.model_dump_json() for e in buffer.events)
    assert "secret" not in dumped and "enterprise" not in dumped


def test_labels_follow_fallback(agent, page, buffer):
    email, phone, plan = fields(page)
    page.focus(phone)
    page.focus(plan)
    assert ("focus", "Phone") in buffer.kinds()
    assert ("focus", "plan") in buffer.kinds()


def test_submit_fires_once_per_form(agent, page, buffer):
    form = page.query_selector_all("form")[0]
    page.submit(form)
    page.submit(form)
    assert buffer.kinds().count(("submit", "signup")) == 1
    assert agent.submitted


def test_submit_abandons_focused_field(agent, page, buffer, clock):
    email = fields(page)[0]
    page.focus(email)
    clock.advance(1.2)
    page.submit(page.query_selector_all("form")[0])
    assert buffer.kinds() == [("focus", "email"), ("submit", "signup"), ("abandon", "email")]
    assert buffer.events[-1].duration == 1200
    # the browser's own blur after submit adds nothing
    page.blur(email)
    assert len(buffer.events) == 3


@pytest.mark.parametrize("attrs, expected", [
    ({"name": "signup", "id": "f1"}, "signup"),
    ({"id": "f1"}, "f1"),
    ({}, "form"),
])
def test_submit_field_name(buffer, attrs, expected):
    doc = Document()
    doc.body.append(Element("form", attrs, [Element("input", {"name": "q"})]))
    CaptureAgent(doc, "p", buffer=buffer).start()
    doc.submit(doc.query_selector_all("form")[0])
    assert buffer.kinds() == [("submit", expected)]


def test_unload_without_submit(agent, page, buffer, clock):
    clock.advance(10)
    phone = fields(page)[1]
    page.focus(phone)
    clock.advance(4)
    page.unload()  # beforeunload and pagehide both fire
    abandons = [(e.field_name, e.duration) for e in buffer.events if e.type.value == "abandon"]
    assert abandons == [("page", 14000), ("Phone", 4000)]
    assert buffer.flushes >= 1


def test_unload_after_submit_skips_page_abandon(agent, page, buffer, clock):
    form = page.query_selector_all("form")[0]
    email, phone, _ = fields(page)
    page.focus(email)
    page.submit(form)
    page.focus(phone)
    clock.advance(3)
    page.unload()
    kinds = buffer.kinds()
    assert ("abandon", "page") not in kinds
    assert kinds.count(("abandon", "Phone")) == 1


def test_waits_for_dom_ready(buffer):
    doc = signup_page(ready_state="loading")
    CaptureAgent(doc, "p", buffer=buffer).start()
    form = doc.query_selector_all("form")[0]
    assert TRACKED not in form.dataset
    doc.finish_loading()
    assert form.dataset[TRACKED] == "1"


def test_from_loader_reads_attributes(buffer):
    doc = signup_page()
    doc.body.append(Element("form", {"id": "checkout"}, [Element("input", {"name": "card"})]))
    loader = Element("script", {"data-pid": "proj_9", "data-form-selector": "#checkout"})
    agent = CaptureAgent.from_loader(doc, loader, buffer=buffer)
    assert agent.project_id == "proj_9"
    signup, checkout = doc.query_selector_all("form")
    assert TRACKED not in signup.dataset
    assert checkout.dataset[TRACKED] == "1"
    assert buffer.document is doc


def test_from_loader_without_project_id_does_nothing(buffer, caplog):
    doc = signup_page()
    with caplog.at_level(logging.ERROR, logger="formpulse.capture.agent"):
        agent = CaptureAgent.from_loader(doc, Element("script", {}), buffer=buffer)
    assert agent is None
    assert "data-project-id" in caplog.text
    assert all(TRACKED not in el.dataset for el in doc.body.descendants())
    assert doc.window.listener_count("pagehide") == 0


def test_dynamic_forms_are_instrumented(buffer):
    async def run():
        doc = Document()
        agent = CaptureAgent(doc, "p", buffer=buffer)
        agent.start()
        form = doc.body.append(Element("form", {"id": "late"}, [Element("input", {"name": "zip"})]))
        for _ in range(3):
            await asyncio.sleep(0)
        doc.focus(form.children[0])
        agent.stop()
        return form

    form = asyncio.run(run())
    assert form.dataset[TRACKED] == "1"
    assert buffer.kinds() == [("focus", "zip")]


def test_stop_removes_window_listeners(agent, page):
    agent.stop()
    assert page.window.listener_count("pagehide") == 0
    assert page.window.listener_count("beforeunload") == 0


def test_bad_form_selector_disables_capture(buffer, caplog):
    doc = signup_page()
    loader = Element("script", {"data-project-id": "p", "data-form-selector": "form > input"})
    with caplog.at_level(logging.ERROR, logger="formpulse.capture.agent"):
        assert CaptureAgent.from_loader(doc, loader, buffer=buffer) is None
    assert "data-form-selector" in caplog.text
    assert all(TRACKED not in el.dataset for el in doc.body.descendants())


@pytest.mark.parametrize("attrs, expected", [
    ({"data-endpoints": "https://a.io/v1, https://b.io/v1"},
     [("https://a.io/v1", send_beacon), ("https://b.io/v1", send_beacon)]),
    ({"data-endpoint": "https://a.io/p", "src": "https://cdn.io/fp.js"}, [("https://a.io/p", send_beacon)]),
    ({"src": "https://cdn.io:8443/js/fp.js?v=2"},
     [("https://cdn.io:8443/v1", send_beacon), ("https://cdn.io:8443/ingest", send_json)]),
    ({"src": "/static/fp.js"}, []),
    ({}, []),
])
def test_loader_endpoints(attrs, expected):
    assert loader_endpoints(Element("script", attrs)) == expected


def test_loader_only_agent_delivers(monkeypatch, clock):
    posts = []
    monkeypatch.setattr(delivery, "_post", lambda url, body, ct: posts.append((url, body, ct)))
    doc = signup_page()
    loader = Element("script", {"data-project-id": "proj_1", "src": "https://collect.formpulse.io/fp.js"})
    agent = CaptureAgent.from_loader(doc, loader, clock=clock)
    doc.focus(fields(doc)[0])
    clock.advance(2)
    doc.unload()
    (url, body, ct), = posts
    assert (url, ct) == ("https://collect.formpulse.io/v1", "text/plain")
    payload = json.loads(base64.b64decode(body))
    assert payload["projectId"] == "proj_1" and payload["sessionId"] == agent.session_id
    assert [e["type"] for e in payload["events"]] == ["focus", "abandon", "abandon"]


def test_loader_without_endpoints_warns(caplog):
    loader = Element("script", {"data-project-id": "p"})
    with caplog.at_level(logging.WARNING, logger="formpulse.capture.agent"):
        agent = CaptureAgent.from_loader(signup_page(), loader)
    assert agent is not None and agent.buffer.routes == []
    assert "will not be delivered" in caplog.text


def test_unload_sends_final_events_in_one_batch(transport, clock):
    t = transport()
    doc = signup_page()
    agent = CaptureAgent(doc, "p", clock=clock, endpoints=[("https://a", t)])
    agent.start()
    doc.focus(fields(doc)[1])
    clock.advance(1)
    doc.unload()
    assert [[e["type"] for e in p["events"]] for _, p in t.calls] == [["focus", "abandon", "abandon"]]


def test_hidden_tab_still_flushes(transport):
    t = transport()
    doc = signup_page()
    CaptureAgent(doc, "p", endpoints=[("https://a", t)]).start()
    doc.focus(fields(doc)[0])
    doc.hide()
    assert [[e["type"] for e in p["events"]] for _, p in t.calls] == [["focus"]]
