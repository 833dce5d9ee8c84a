from conftest import make_engine, make_tabs
from eventcalc.bus import DIRTY, SAVED, TICK, Debouncer, EventBus, PageEvents
from eventcalc.storage import MemoryStorageBackend, SqlStorageBackend


def test_storage_events_reach_only_other_tabs() -> None:
    backend = MemoryStorageBackend()
    a, b = backend.area(), backend.area()
    seen_a, seen_b = [], []
    a.add_listener(seen_a.append)
    off_b = b.add_listener(seen_b.append)

    a.set_item("k", "1")
    assert b.get_item("k") == "1"
    assert seen_a == []
    assert [(e.key, e.old_value, e.new_value) for e in seen_b] == [("k", None, "1")]

    a.set_item("k", "1")
    assert len(seen_b) == 1

    off_b()
    a.remove_item("k")
    assert len(seen_b) == 1
    assert b.get_item("k") is None


def test_failing_listener_does_not_stop_others() -> None:
    backend = MemoryStorageBackend()
    a, b = backend.area(), backend.area()
    seen = []

    def boom(_event) -> None:
        raise RuntimeError("listener bug")

    b.add_listener(boom)
    b.add_listener(seen.append)
    a.set_item("k", "v")
    assert len(seen) == 1


def test_sql_storage_backend_persists_and_reloads() -> None:
    engine = make_engine()
    first = SqlStorageBackend(engine)
    first.area().set_item("eventcalc.tick", "1")

    second = SqlStorageBackend(engine)
    area = second.area()
    seen = []
    area.add_listener(seen.append)
    assert area.get_item("eventcalc.tick") == "1"

    first.area().set_item("eventcalc.tick", "2")
    second.reload()
    assert area.get_item("eventcalc.tick") == "2"
    assert [(e.key, e.new_value) for e in seen] == [("eventcalc.tick", "2")]


def test_event_bus_on_off() -> None:
    bus = EventBus()
    calls = []
    off = bus.on("x", calls.append)
    bus.emit("x", 1)
    off()
    bus.emit("x", 2)
    assert calls == [1]


def test_page_events_visibility() -> None:
    page = PageEvents()
    details = []
    page.add_listener("visibilitychange", details.append)
    page.set_visible(False)
    assert page.visible is False
    assert details == [{"visible": False}]


def test_calc_tick_reaches_own_tab_once_and_other_tabs_via_storage() -> None:
    a, b = make_tabs(2)
    own, other, page_ticks = [], [], []
    a.on_calc_tick(lambda: own.append(1))
    b.on_calc_tick(lambda: other.append(1))
    a.page.add_listener(TICK, page_ticks.append)

    a.emit_calc_tick()
    a.emit_calc_tick()

    assert len(own) == 2
    assert len(other) == 2
    assert len(page_ticks) == 2


def test_stamps_strictly_increase() -> None:
    (tab,) = make_tabs(1)
    stamps = [int(tab.next_stamp()) for _ in range(50)]
    assert stamps == sorted(set(stamps))


def test_dirty_and_saved_markers() -> None:
    a, b = make_tabs(2)
    events = []
    a.page.add_listener(DIRTY, lambda d: events.append(("dirty", d)))
    a.page.add_listener(SAVED, lambda d: events.append(("saved", d)))

    a.mark_dirty("e1")
    assert b.is_dirty("e1")
    a.mark_saved("e1")
    assert not b.is_dirty("e1")
    assert b.last_saved_at("e1") is not None
    assert events == [("dirty", {"event_id": "e1"}), ("saved", {"event_id": "e1"})]


def test_settings_bump_is_seen_by_other_tab() -> None:
    a, b = make_tabs(2)
    keys = []
    b.storage.add_listener(lambda e: keys.append(e.key))
    a.bump_settings()
    assert keys == ["eventcalc.settings.bump"]


def test_debouncer_coalesces_until_flush() -> None:
    calls = []
    debouncer = Debouncer(delay_ms=10_000)
    debouncer.schedule(lambda: calls.append("first"))
    debouncer.schedule(lambda: calls.append("second"))
    assert debouncer.pending
    debouncer.flush()
    assert calls == ["second"]
    assert not debouncer.pending


def test_debouncer_without_delay_runs_inline() -> None:
    calls = []
    Debouncer(delay_ms=0).schedule(lambda: calls.append(1))
    assert calls == [1]


def test_debouncer_cancel_drops_pending_call() -> None:
    calls = []
    debouncer = Debouncer(delay_ms=10_000)
    debouncer.schedule(lambda: calls.append(1))
    debouncer.cancel()
    debouncer.flush()
    assert calls == []
