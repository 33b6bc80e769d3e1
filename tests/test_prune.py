from datetime import timedelta

from formpulse.events import utcnow
from formpulse.store import MemoryEventStore, StoreUnavailable
from formpulse.workers import prune


def test_prune_removes_expired(monkeypatch, ev, capsys):
    now = utcnow()
    store = MemoryEventStore()
    store.insert([ev("focus", "a", at=now - timedelta(days=45)), ev("focus", "a", at=now)])
    monkeypatch.setattr(prune, "build_store", lambda: store)
    assert prune.main(["--days", "30"]) == 0
    assert "[prune] removed 1 events" in capsys.readouterr().out
    assert len(store.select("p1", now - timedelta(days=365))) == 1


def test_prune_nothing_to_do(monkeypatch, capsys):
    monkeypatch.setattr(prune, "build_store", MemoryEventStore)
    assert prune.main([]) == 0
    assert "nothing to remove" in capsys.readouterr().out


def test_prune_store_down(monkeypatch, capsys):
    class Down(MemoryEventStore):
        def prune(self, before):
            raise StoreUnavailable("refused")

    monkeypatch.setattr(prune, "build_store", Down)
    assert prune.main([]) == 1
    assert "store unavailable" in capsys.readouterr().out
