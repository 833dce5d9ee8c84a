from datetime import date

from conftest import make_tabs
from eventcalc.aggregates import EventList, payment_fields, percent_0_100, sort_event_rows


def test_percent_0_100() -> None:
    assert percent_0_100(0.3) == 30
    assert percent_0_100("30") == 30
    assert percent_0_100(150) is None
    assert percent_0_100(None) is None


def test_installment_plan_next_due() -> None:
    header = {"deposit_percent": 30, "deposit_due_date": "2024-05-01", "balance_due_date": "2024-06-01"}

    before_deposit = payment_fields(header, date(2024, 4, 20))
    assert before_deposit["payment_plan"] == "installments"
    assert before_deposit["deposit_percent_0_100"] == 30
    assert before_deposit["next_due_kind"] == "deposit"
    assert before_deposit["next_due_date"] == "2024-05-01"
    assert before_deposit["is_overdue"] is False

    after_deposit = payment_fields(header, date(2024, 5, 10))
    assert after_deposit["next_due_kind"] == "balance"
    assert after_deposit["is_overdue"] is False

    late = payment_fields(header, date(2024, 6, 5))
    assert late["next_due_kind"] == "balance"
    assert late["is_overdue"] is True


def test_full_payment_plan() -> None:
    fields = payment_fields({"is_full_payment": True, "balance_due_on": "2024-06-01T00:00:00Z"}, date(2024, 5, 1))
    assert fields["payment_plan"] == "full"
    assert fields["next_due_kind"] == "balance"
    assert fields["balance_due_date"] == "2024-06-01"

    explicit = payment_fields({"payment_plan": "full", "deposit_percent": 0.3, "deposit_due_date": "2024-05-01"}, date(2024, 4, 1))
    assert explicit["payment_plan"] == "full"
    assert explicit["next_due_kind"] is None


def test_no_payment_information() -> None:
    fields = payment_fields({}, date(2024, 5, 1))
    assert fields["payment_plan"] is None
    assert fields["next_due_date"] is None
    assert fields["is_overdue"] is None


def test_sort_event_rows() -> None:
    rows = [
        {"id": "b", "updated_at": "2024-01-02T00:00:00Z"},
        {"id": "a", "updated_at": "2024-01-02T00:00:00Z"},
        {"id": "c", "updated_at": None, "event_date": "2024-05-01"},
        {"id": "d", "updated_at": "2024-01-03T00:00:00Z"},
        {"id": "e", "updated_at": None, "event_date": None},
    ]
    assert [r["id"] for r in sort_event_rows(rows)] == ["d", "a", "b", "c", "e"]


def _seeded(client) -> None:
    client.seed(
        "event_headers",
        [
            {"id": "e1", "event_name": "Gala", "deposit_percent": 30, "deposit_due_date": "2024-05-10"},
            {"id": "e2", "event_name": "Wedding"},
        ],
    )
    client.seed("event_totals", [{"event_id": "e1", "total_vnd": "1500"}])


def _header_selects(client) -> int:
    return client.calls.count(("select", "event_headers"))


def test_event_list_joins_totals(client) -> None:
    _seeded(client)
    (tab,) = make_tabs(1)
    events = EventList(client, tab, today=lambda: date(2024, 5, 1), debounce_ms=0)
    rows = events.list()
    assert [r["id"] for r in rows] == ["e1", "e2"]
    assert rows[0]["total_vnd"] == 1500
    assert rows[0]["payment_plan"] == "installments"
    assert rows[0]["next_due_kind"] == "deposit"
    assert rows[1]["total_vnd"] is None
    assert rows[1]["payment_plan"] is None


def test_event_list_refresh_triggers(client) -> None:
    _seeded(client)
    a, b = make_tabs(2)
    events = EventList(client, a, debounce_ms=0)
    assert _header_selects(client) == 1

    a.page.focus()
    assert _header_selects(client) == 2

    a.page.set_visible(False)
    assert _header_selects(client) == 2
    a.page.set_visible(True)
    assert _header_selects(client) == 3

    b.emit_calc_tick()
    assert _header_selects(client) == 4

    b.storage.set_item("eventcalc.snap.totals:e1", "{}")
    b.storage.set_item("eventcalc.save.lastAt:e1", "1")
    assert _header_selects(client) == 6

    b.storage.set_item("eventcalc.unrelated", "1")
    a.page.dispatch("staff:totals", {"event_id": "e1"})
    assert _header_selects(client) == 7

    events.close()
    a.page.focus()
    assert _header_selects(client) == 7


def test_event_list_debounces(client) -> None:
    (tab,) = make_tabs(1)
    events = EventList(client, tab, debounce_ms=10_000, autoload=False)
    tab.page.focus()
    tab.page.focus()
    assert _header_selects(client) == 0
    events.debouncer.flush()
    assert _header_selects(client) == 1
    events.close()


def test_event_list_error_clears_rows(client) -> None:
    _seeded(client)
    (tab,) = make_tabs(1)
    events = EventList(client, tab, debounce_ms=0)
    client.fail_next("select", "event_totals", "relation does not exist")
    events.refresh()
    assert events.rows == []
    assert events.error == "relation does not exist"
