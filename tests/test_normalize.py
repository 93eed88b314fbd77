from datetime import date
from types import MappingProxyType

import pytest

from tripledger.adapters import MediRouteCsvAdapter, MtmCsvAdapter
from tripledger.allowlist import load_policy
from tripledger.errors import RowValidationError
from tripledger.normalize import (
    classify_row,
    compute_on_time,
    normalize_mobility,
    normalize_status,
    normalize_trip,
    normalize_trip_type,
    parse_clock_time,
    parse_flag,
    parse_service_date,
)
from tripledger.schemas import RawRow, RecordKind, RowOutcome, SafeRow


def test_parse_service_date_formats() -> None:
    assert parse_service_date("2026-03-02") == date(2026, 3, 2)
    assert parse_service_date("3/2/2026") == date(2026, 3, 2)
    assert parse_service_date("03-02-2026") == date(2026, 3, 2)
    with pytest.raises(ValueError):
        parse_service_date("2026-02-30")
    with pytest.raises(ValueError):
        parse_service_date("March 2")


def test_parse_clock_time_formats() -> None:
    assert parse_clock_time("8:05") == "08:05"
    assert parse_clock_time("2:05 PM") == "14:05"
    assert parse_clock_time("12:30 am") == "00:30"
    assert parse_clock_time("1430") == "14:30"
    with pytest.raises(ValueError):
        parse_clock_time("25:00")
    with pytest.raises(ValueError):
        parse_clock_time("13:00 PM")


def test_mobility_and_status_vocabulary() -> None:
    assert normalize_mobility("Wheelchair") == "WC"
    assert normalize_mobility("STR") == "STR"
    assert normalize_mobility("") == "AMB"
    assert normalize_status("Cancelled - member", RecordKind.MANIFEST) == "cancelled"
    assert normalize_status("No Show", RecordKind.ACTUAL) == "no_show"
    assert normalize_status(None, RecordKind.ACTUAL) == "completed"
    assert normalize_status("Booked", RecordKind.MANIFEST) == "scheduled"


def test_normalize_trip_reports_field_name_on_bad_value() -> None:
    row = SafeRow(
        row_number=5,
        values=MappingProxyType({"external_trip_id": "T-1", "service_date": "2026-03-02", "pickup_lat": "123.4"}),
    )

    with pytest.raises(RowValidationError) as excinfo:
        normalize_trip(row, ("external_trip_id", "service_date"), RecordKind.ACTUAL)

    assert excinfo.value.row_number == 5
    assert "pickup_lat" in excinfo.value.message


def test_classify_row_outcomes() -> None:
    adapter = MtmCsvAdapter()
    policy = load_policy("2026.2")

    def raw(values: dict[str, str], **kwargs) -> RawRow:
        return RawRow(row_number=1, values=MappingProxyType(values), **kwargs)

    valid = classify_row(adapter, raw({"Confirmation Number": "C-1", "DOS": "03/02/2026"}), policy)
    cancelled = classify_row(
        adapter, raw({"Confirmation Number": "C-2", "DOS": "03/02/2026", "Trip Status": "Cancelled"}), policy
    )
    missing = classify_row(adapter, raw({"Confirmation Number": "", "DOS": "03/02/2026"}), policy)
    blank = classify_row(adapter, raw({"Confirmation Number": "", "DOS": ""}, blank=True), policy)

    assert valid.outcome is RowOutcome.VALID
    assert valid.trip.trip_status == "scheduled"
    assert cancelled.outcome is RowOutcome.CANCELLED
    assert missing.outcome is RowOutcome.ERROR
    assert missing.reason == "missing required field: external_trip_id"
    assert blank.outcome is RowOutcome.SKIPPED


def test_driver_only_required_for_actual_trips() -> None:
    adapter = MediRouteCsvAdapter()
    row = RawRow(row_number=2, values=MappingProxyType({"Trip ID": "MR-1", "Date": "03/02/2026", "Driver": ""}))

    result = classify_row(adapter, row, load_policy("2026.2"))

    assert result.outcome is RowOutcome.ERROR
    assert "driver_name" in result.reason


def test_on_time_window_and_trip_flags() -> None:
    assert compute_on_time("08:00", "08:15") is True
    assert compute_on_time("08:00", "08:16") is False
    assert compute_on_time("08:00", "07:40") is True
    assert compute_on_time(None, "08:10") is None
    assert compute_on_time("08:00", None) is None

    assert parse_flag("Yes") is True
    assert parse_flag(" x ") is True
    assert parse_flag("No") is False
    assert parse_flag(None) is False
    assert normalize_trip_type("Will Call") == "W"
    assert normalize_trip_type("appt") == "A"
    assert normalize_trip_type("Return") is None


def test_actual_trip_carries_flags_and_punctuality() -> None:
    adapter = MediRouteCsvAdapter()
    row = RawRow(
        row_number=3,
        values=MappingProxyType(
            {
                "Trip ID": "MR-9",
                "Date": "03/02/2026",
                "Driver": "Pat Lee",
                "Req Pickup": "9:00 AM",
                "Pickup Arrive": "9:22 AM",
                "Trip Type": "W",
                "Standing": "Y",
                "Status": "No Show",
            }
        ),
    )

    result = classify_row(adapter, row, load_policy("2026.3"))

    assert result.outcome is RowOutcome.VALID
    assert result.trip.was_on_time is False
    assert result.trip.is_will_call is True
    assert result.trip.is_standing is True
    assert result.trip.is_no_show is True
    assert result.trip.trip_type == "W"


def test_manifest_rows_are_never_rated_for_punctuality() -> None:
    row = SafeRow(
        row_number=1,
        values=MappingProxyType(
            {"external_trip_id": "C-1", "service_date": "2026-03-02", "pickup_time": "08:00", "actual_pickup_time": "09:00"}
        ),
    )

    trip = normalize_trip(row, ("external_trip_id", "service_date"), RecordKind.MANIFEST)

    assert trip.was_on_time is None
