import json

import pytest

from conftest import make_tabs
from eventcalc.bus import SETTINGS_CHANGED
from eventcalc.defaults import GlobalStaffDefaults, GlobalTransportDefaults, clean_vehicle_types
from eventcalc.resolvers import SeedState, StaffSettingsResolver, TransportSettingsResolver


def test_clean_vehicle_types() -> None:
    cleaned = clean_vehicle_types([{"name": "  Van ", "cost_per_km": "0.7"}, {"name": " "}, "junk", {"id": "t", "name": "Truck"}])
    assert [v.name for v in cleaned] == ["Van", "Truck"]
    assert cleaned[0].id
    assert cleaned[0].cost_per_km == 0.7
    assert cleaned[1].id == "t"
    assert cleaned[1].cost_per_km == 0.0


def test_remote_row_wins_and_is_mirrored(client, tab) -> None:
    client.seed("staff_defaults", [{"key": "global", "markup_x": 2.5}])
    defaults = GlobalStaffDefaults(client, tab)
    assert defaults.markup_x == 2.5
    mirror = json.loads(tab.storage.get_item("eventcalc.global.staff.defaults"))
    assert mirror["markupX"] == 2.5
    assert mirror["__v"] == 1


def test_invalid_remote_markup_is_clamped(client, tab) -> None:
    client.seed("staff_defaults", [{"key": "global", "markup_x": 0}])
    assert GlobalStaffDefaults(client, tab).markup_x == 1.0


def test_unreadable_mirror_falls_back_to_factory(client, tab) -> None:
    tab.storage.set_item("eventcalc.global.transport.defaults", "{not json")
    defaults = GlobalTransportDefaults(client, tab, autoload=False)
    assert defaults.markup_x == 1.0
    assert [v.name for v in defaults.vehicle_types] == ["Van", "Truck"]


def test_remote_failure_keeps_mirror(client, tab) -> None:
    first = GlobalStaffDefaults(client, tab)
    first.set_markup_x(1.7)
    client.tables["staff_defaults"][0]["markup_x"] = 9
    client.fail_next("select", "staff_defaults", "network down")
    second = GlobalStaffDefaults(client, tab)
    assert second.markup_x == 1.7


def test_new_event_transport_reads_through_to_defaults(client, tab) -> None:
    defaults = GlobalTransportDefaults(client, tab)
    defaults.set_markup_x(1.5)
    resolver = TransportSettingsResolver(client, "new-event", tab, defaults)

    assert resolver.state is SeedState.UNSEEDED
    assert resolver.markup_x == 1.5
    assert resolver.vehicle_types == [
        {"id": "global:van", "event_id": "new-event", "name": "Van", "cost_per_km": 0.7},
        {"id": "global:truck", "event_id": "new-event", "name": "Truck", "cost_per_km": 1.2},
    ]
    assert "event_transport_settings" not in client.tables
    assert "event_transport_vehicle_types" not in client.tables


def test_adopt_copies_defaults_once(client) -> None:
    a, b = make_tabs(2)
    defaults = GlobalTransportDefaults(client, a)
    defaults.set_markup_x(1.5)
    resolver = TransportSettingsResolver(client, "e1", a, defaults)

    assert resolver.adopt()
    assert resolver.state is SeedState.RESOLVED
    assert [v["name"] for v in resolver.vehicle_types] == ["Van", "Truck"]
    assert not resolver.vehicle_types[0]["id"].startswith("global:")
    assert client.tables["event_transport_settings"][0]["markup_x"] == 1.5
    assert resolver.seeded_marker

    assert resolver.adopt()
    assert len(client.tables["event_transport_vehicle_types"]) == 2

    other = TransportSettingsResolver(client, "e1", b, GlobalTransportDefaults(client, b))
    assert other.state is SeedState.RESOLVED
    assert other.markup_x == 1.5


def test_adopt_is_refused_when_marker_exists(client, tab) -> None:
    tab.storage.set_item("eventcalc.transport.seeded:e2", "1")
    resolver = TransportSettingsResolver(client, "e2", tab, GlobalTransportDefaults(client, tab))
    assert not resolver.adopt()
    assert "event_transport_settings" not in client.tables


def test_transport_set_markup_and_replace_vehicles(client, tab) -> None:
    defaults = GlobalTransportDefaults(client, tab)
    changed = []
    tab.page.add_listener(SETTINGS_CHANGED, changed.append)
    resolver = TransportSettingsResolver(client, "e1", tab, defaults)

    assert resolver.set_markup_x("2")
    assert resolver.markup_x == 2.0
    assert defaults.markup_x == 2.0
    assert changed == [{"event_id": "e1", "center": "transport", "markup_x": 2.0}]

    assert resolver.replace_vehicle_types([{"name": "Bus", "cost_per_km": 3}, {"name": ""}])
    assert [(v["name"], v["cost_per_km"]) for v in resolver.vehicle_types] == [("Bus", 3.0)]


def test_staff_seeds_new_event_once(client) -> None:
    a, b = make_tabs(2)
    defaults = GlobalStaffDefaults(client, a)
    defaults.set_markup_x(1.3)

    resolver = StaffSettingsResolver(client, "e1", a, defaults)
    assert resolver.state is SeedState.RESOLVED
    assert resolver.markup_x == 1.3
    assert resolver.seeded_marker
    assert len(client.tables["event_staff_settings"]) == 1

    again = StaffSettingsResolver(client, "e1", b, GlobalStaffDefaults(client, b))
    assert again.state is SeedState.RESOLVED
    assert len(client.tables["event_staff_settings"]) == 1

    client.tables["event_staff_settings"].clear()
    after_marker = StaffSettingsResolver(client, "e1", b, defaults)
    assert after_marker.state is SeedState.UNSEEDED
    assert client.tables["event_staff_settings"] == []
    assert after_marker.markup_x == 1.3


def test_staff_seed_failure_leaves_event_unseeded(client, tab) -> None:
    defaults = GlobalStaffDefaults(client, tab)
    client.fail_next("upsert", "event_staff_settings", "permission denied")
    resolver = StaffSettingsResolver(client, "e1", tab, defaults)
    assert resolver.state is SeedState.UNSEEDED
    assert resolver.error == "permission denied"
    assert not resolver.seeded_marker


def test_staff_set_markup_writes_through_and_propagates(client, tab) -> None:
    defaults = GlobalStaffDefaults(client, tab)
    resolver = StaffSettingsResolver(client, "e1", tab, defaults)
    client.insert("event_staff_rows", {"event_id": "e1", "name": "A", "markup_x": 1.0})
    client.insert("event_staff_rows", {"event_id": "e1", "name": "B", "markup_x": 1.0})

    assert resolver.set_markup_x(1.8)
    assert resolver.markup_x == 1.8
    assert client.tables["staff_defaults"][0]["markup_x"] == 1.8

    assert resolver.propagate_markup_to_rows(1.8)
    assert {r["markup_x"] for r in client.tables["event_staff_rows"]} == {1.8}


def test_missing_event_id(client, tab) -> None:
    resolver = StaffSettingsResolver(client, None, tab, GlobalStaffDefaults(client, tab))
    assert resolver.settings is None
    assert not resolver.set_markup_x(2)
    assert resolver.error == "Missing event id"


def test_bump_reloads_other_tab_defaults(client) -> None:
    a, b = make_tabs(2)
    defaults_a = GlobalTransportDefaults(client, a)
    defaults_b = GlobalTransportDefaults(client, b)

    defaults_a.replace_vehicle_types([{"name": " Bus ", "cost_per_km": 2}])
    assert [(v.name, v.cost_per_km) for v in defaults_b.vehicle_types] == [("Bus", 2.0)]

    defaults_b.close()
    defaults_a.set_markup_x(3)
    assert defaults_b.markup_x == 1.0


def test_save_all_updates_then_inserts(client, tab) -> None:
    defaults = GlobalTransportDefaults(client, tab)
    assert defaults.save_all(markup_x=1.4)
    assert defaults.save_all(markup_x=1.6)
    rows = client.tables["transport_defaults"]
    assert len(rows) == 1
    assert rows[0]["markup_x"] == 1.6
    assert [v["name"] for v in rows[0]["vehicle_types"]] == ["Van", "Truck"]
    writes = [c for c in client.calls if c[0] in ("update", "insert")]
    assert writes == [
        ("update", "transport_defaults"),
        ("insert", "transport_defaults"),
        ("update", "transport_defaults"),
    ]
    assert defaults.markup_x == 1.6


def test_save_all_failure_sets_error(client, tab) -> None:
    defaults = GlobalTransportDefaults(client, tab)
    client.fail_next("update", "transport_defaults", "denied")
    assert not defaults.save_all()
    assert defaults.error == "denied"


def test_reset_to_factory(client, tab) -> None:
    defaults = GlobalTransportDefaults(client, tab)
    defaults.replace_vehicle_types([])
    defaults.set_markup_x(2)
    defaults.reset_to_factory()
    assert defaults.markup_x == pytest.approx(1.0)
    assert [v.name for v in defaults.vehicle_types] == ["Van", "Truck"]


def test_vehicle_type_add_update_remove(client) -> None:
    a, b = make_tabs(2)
    defaults = GlobalTransportDefaults(client, a)
    other = GlobalTransportDefaults(client, b)

    added = defaults.add_vehicle_type("  Bus ", "2.5")
    assert added.name == "Bus"
    assert added.cost_per_km == 2.5
    mirror = json.loads(a.storage.get_item("eventcalc.global.transport.defaults"))
    assert [v["name"] for v in mirror["vehicleTypes"]] == ["Van", "Truck", "Bus"]
    assert [v.name for v in other.vehicle_types] == ["Van", "Truck", "Bus"]

    assert defaults.add_vehicle_type("   ", 1) is None
    assert len(defaults.vehicle_types) == 3

    defaults.update_vehicle_type(added.id, {"name": "Coach", "cost_per_km": 3})
    updated = defaults.vehicle_types[-1]
    assert (updated.id, updated.name, updated.cost_per_km) == (added.id, "Coach", 3.0)
    defaults.update_vehicle_type(added.id, {"name": "  "})
    assert defaults.vehicle_types[-1].name == "Coach"
    assert other.vehicle_types[-1].name == "Coach"

    defaults.remove_vehicle_type("van")
    assert [v.id for v in defaults.vehicle_types] == ["truck", added.id]
    assert [v.id for v in other.vehicle_types] == ["truck", added.id]
    assert client.tables.get("transport_defaults", []) == []
