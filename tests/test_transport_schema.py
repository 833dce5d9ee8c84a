import pytest

from eventcalc.errors import RemoteError, SchemaProbeError
from eventcalc.remote import MemoryRowStoreClient
from eventcalc.transport_schema import (
    CANDIDATES,
    FIXED_COLUMNS,
    TRANSPORT_TABLE,
    ColumnProber,
    ProbeState,
    prober_for,
)

LEGACY_COLUMNS = set(FIXED_COLUMNS) | {"from_address", "to_address", "roundtrip"}


def _legacy_client(**kwargs) -> MemoryRowStoreClient:
    client = MemoryRowStoreClient(columns={TRANSPORT_TABLE: LEGACY_COLUMNS}, **kwargs)
    client.seed(
        TRANSPORT_TABLE,
        [{"event_id": "e1", "from_address": "Kitchen", "to_address": "Venue", "roundtrip": True, "distance_km": 12}],
    )
    return client


def test_probe_succeeds_on_second_candidate_and_is_reused() -> None:
    client = _legacy_client()
    prober = ColumnProber()
    rows = prober.select(client, filters={"event_id": "e1"})
    assert prober.state is ProbeState.RESOLVED
    assert prober.mapping == CANDIDATES[1]
    assert rows[0]["from_text"] == "Kitchen"
    assert rows[0]["to_text"] == "Venue"
    assert rows[0]["round_trip"] is True

    selects_before = client.calls.count(("select", TRANSPORT_TABLE))
    prober.select(client, filters={"event_id": "e1"})
    assert client.calls.count(("select", TRANSPORT_TABLE)) == selects_before + 1


def test_probe_fails_when_no_candidate_matches() -> None:
    client = MemoryRowStoreClient(columns={TRANSPORT_TABLE: set(FIXED_COLUMNS)})
    prober = ColumnProber()
    with pytest.raises(SchemaProbeError, match="Unable to detect"):
        prober.select(client)
    assert prober.state is ProbeState.UNPROBED
    assert prober.mapping is None

    with pytest.raises(SchemaProbeError, match="Unable to detect"):
        prober.ensure(client, "e1")


def test_ensure_raises_when_select_leaves_no_mapping() -> None:
    prober = ColumnProber()
    prober.select = lambda *args, **kwargs: []
    with pytest.raises(SchemaProbeError):
        prober.ensure(MemoryRowStoreClient(), "e1")


def test_probe_stops_on_non_schema_error() -> None:
    client = _legacy_client()
    client.fail_next("select", TRANSPORT_TABLE, "permission denied for table")
    prober = ColumnProber()
    with pytest.raises(RemoteError, match="permission denied"):
        prober.select(client)
    assert prober.mapping is None


def test_to_db_patch_maps_columns_and_rounds_known_integers() -> None:
    prober = ColumnProber()
    prober.mapping = CANDIDATES[1]
    out = prober.to_db_patch(
        {"from_text": "A", "to_text": "B", "round_trip": False, "eta_minutes": 12.6, "distance_km": "4.5", "junk": 1}
    )
    assert out == {
        "from_address": "A",
        "to_address": "B",
        "roundtrip": False,
        "eta_minutes": 13,
        "distance_km": 4.5,
    }


def test_write_with_retry_rounds_once_and_remembers() -> None:
    prober = ColumnProber()
    attempts = []

    def write(payload: dict) -> dict:
        attempts.append(dict(payload))
        if isinstance(payload.get("distance_km"), float) and not payload["distance_km"].is_integer():
            raise RemoteError('invalid input syntax for type integer: "12.4"', code="22P02")
        return payload

    result = prober.write_with_retry(write, {"distance_km": 12.4, "eta_minutes": 30})
    assert result["distance_km"] == 12
    assert len(attempts) == 2
    assert "distance_km" in prober.integer_fields


def test_integer_fields_round_half_up() -> None:
    prober = ColumnProber()
    prober.integer_fields.update({"distance_km", "eta_minutes"})
    assert prober.to_db_patch({"distance_km": 12.5, "eta_minutes": 2.5}) == {"distance_km": 13, "eta_minutes": 3}

    def write(payload: dict) -> dict:
        if any(isinstance(v, float) and not v.is_integer() for v in payload.values()):
            raise RemoteError('invalid input syntax for type integer: "0.5"', code="22P02")
        return payload

    assert ColumnProber().write_with_retry(write, {"distance_km": 0.5, "eta_minutes": 4.5}) == {"distance_km": 1, "eta_minutes": 5}


def test_write_with_retry_gives_up_after_one_retry() -> None:
    prober = ColumnProber()
    calls = []

    def write(payload: dict) -> dict:
        calls.append(payload)
        raise RemoteError('invalid input syntax for type integer: "x"')

    with pytest.raises(RemoteError):
        prober.write_with_retry(write, {"distance_km": 1.5})
    assert len(calls) == 2

    calls.clear()
    with pytest.raises(RemoteError):
        prober.write_with_retry(write, {"distance_km": 2})
    assert len(calls) == 1


def test_prober_registry_shares_per_table() -> None:
    assert prober_for() is prober_for(TRANSPORT_TABLE)
    assert prober_for("other_table") is not prober_for()
