from collections.abc import Callable, Iterable, Mapping
from datetime import date
import re

from tripledger.adapters import FormatAdapter
from tripledger.allowlist import ColumnAllowlistPolicy, filter_row
from tripledger.errors import RowValidationError
from tripledger.schemas import NormalizedTrip, RawRow, RecordKind, RowClassification, RowOutcome, SafeRow


_DATE_ISO = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_DATE_US = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4})$")
_TIME_24 = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_TIME_12 = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AP])\.?M\.?$", re.IGNORECASE)
_TIME_COMPACT = re.compile(r"^(\d{2})(\d{2})$")


def parse_service_date(value: str) -> date:
    cleaned = value.strip()
    iso = _DATE_ISO.match(cleaned)
    if iso:
        year, month, day = (int(part) for part in iso.groups())
    else:
        us = _DATE_US.match(cleaned)
        if not us:
            raise ValueError(f"unrecognized date format: {cleaned}")
        month, day, year = (int(part) for part in us.groups())
    return date(year, month, day)


def parse_clock_time(value: str) -> str:
    cleaned = value.strip()
    hour: int
    minute: int

    match = _TIME_24.match(cleaned)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
    elif match := _TIME_12.match(cleaned):
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour < 1 or hour > 12:
            raise ValueError(f"hour out of range: {cleaned}")
        meridiem = match.group(4).upper()
        if meridiem == "P" and hour < 12:
            hour += 12
        if meridiem == "A" and hour == 12:
            hour = 0
    elif match := _TIME_COMPACT.match(cleaned):
        hour, minute = int(match.group(1)), int(match.group(2))
    else:
        raise ValueError(f"unrecognized time format: {cleaned}")

    if hour > 23 or minute > 59:
        raise ValueError(f"time out of range: {cleaned}")
    return f"{hour:02d}:{minute:02d}"


def normalize_mobility(value: str | None) -> str:
    if not value:
        return "AMB"
    upper = value.strip().upper()
    if "WHEEL" in upper or upper in {"WC", "W", "WCH"}:
        return "WC"
    if "STRETCH" in upper or upper in {"STR", "S", "GURNEY"}:
        return "STR"
    return "AMB"


def normalize_status(value: str | None, record_kind: RecordKind) -> str:
    default = "completed" if record_kind is RecordKind.ACTUAL else "scheduled"
    if not value:
        return default
    lower = value.strip().lower()
    if "cancel" in lower or "void" in lower:
        return "cancelled"
    if "no" in lower and "show" in lower:
        return "no_show"
    return default


ON_TIME_WINDOW_MINUTES = 15
_TRUTHY = frozenset({"yes", "y", "true", "1", "x"})


def parse_flag(value: str | None) -> bool:
    return bool(value) and value.strip().lower() in _TRUTHY


def normalize_trip_type(value: str | None) -> str | None:
    # A = appointment, W = will call.
    if not value:
        return None
    initial = value.strip().upper()[:1]
    return initial if initial in {"A", "W"} else None


def _minutes(clock: str) -> int:
    hour, minute = clock.split(":")
    return int(hour) * 60 + int(minute)


def compute_on_time(scheduled: str | None, actual: str | None, window_minutes: int = ON_TIME_WINDOW_MINUTES) -> bool | None:
    if not scheduled or not actual:
        return None
    return _minutes(actual) <= _minutes(scheduled) + window_minutes


def parse_number(value: str) -> float:
    try:
        return float(value.strip().replace(",", ""))
    except ValueError as exc:
        raise ValueError(f"not a number: {value.strip()}") from exc


def _bounded(limit: float) -> Callable[[str], float]:
    def parse(value: str) -> float:
        number = parse_number(value)
        if abs(number) > limit:
            raise ValueError(f"coordinate out of range: {number}")
        return number

    return parse


def _non_negative(value: str) -> float:
    number = parse_number(value)
    if number < 0:
        raise ValueError(f"negative distance: {number}")
    return number


def _optional(values: Mapping[str, str], field_name: str, parser: Callable[[str], object]):
    raw = values.get(field_name)
    if not raw:
        return None
    try:
        return parser(raw)
    except ValueError as exc:
        raise ValueError(f"invalid {field_name}: {exc}") from exc


def normalize_trip(safe_row: SafeRow, required_fields: Iterable[str], record_kind: RecordKind) -> NormalizedTrip:
    values = safe_row.values
    missing = [field_name for field_name in required_fields if not values.get(field_name)]
    if missing:
        raise RowValidationError(safe_row.row_number, f"missing required field: {', '.join(missing)}")

    latitude = _bounded(90)
    longitude = _bounded(180)
    try:
        pickup_time = _optional(values, "pickup_time", parse_clock_time)
        actual_pickup_time = _optional(values, "actual_pickup_time", parse_clock_time)
        trip_type = normalize_trip_type(values.get("trip_type"))
        return NormalizedTrip(
            external_trip_id=values["external_trip_id"],
            service_date=_optional(values, "service_date", parse_service_date),
            mobility_type=normalize_mobility(values.get("mobility_type")),
            trip_status=normalize_status(values.get("trip_status"), record_kind),
            appointment_time=_optional(values, "appointment_time", parse_clock_time),
            pickup_time=pickup_time,
            pickup_window_start=_optional(values, "pickup_window_start", parse_clock_time),
            pickup_window_end=_optional(values, "pickup_window_end", parse_clock_time),
            actual_pickup_time=actual_pickup_time,
            actual_dropoff_time=_optional(values, "actual_dropoff_time", parse_clock_time),
            funding_source=values.get("funding_source"),
            pickup_city=values.get("pickup_city"),
            dropoff_city=values.get("dropoff_city"),
            driver_name=values.get("driver_name"),
            vehicle_unit=values.get("vehicle_unit"),
            pickup_lat=_optional(values, "pickup_lat", latitude),
            pickup_lon=_optional(values, "pickup_lon", longitude),
            dropoff_lat=_optional(values, "dropoff_lat", latitude),
            dropoff_lon=_optional(values, "dropoff_lon", longitude),
            miles=_optional(values, "miles", _non_negative),
            trip_type=trip_type,
            is_standing=parse_flag(values.get("is_standing")),
            is_will_call=parse_flag(values.get("is_will_call")) or trip_type == "W",
            was_on_time=compute_on_time(pickup_time, actual_pickup_time) if record_kind is RecordKind.ACTUAL else None,
        )
    except ValueError as exc:
        raise RowValidationError(safe_row.row_number, str(exc)) from exc


def classify_row(adapter: FormatAdapter, row: RawRow, policy: ColumnAllowlistPolicy) -> RowClassification:
    if row.blank:
        return RowClassification(row.row_number, RowOutcome.SKIPPED, row.raw_ref, reason="blank row")
    if row.error:
        return RowClassification(row.row_number, RowOutcome.ERROR, row.raw_ref, reason=row.error)

    filtered = filter_row(row, adapter.column_map, policy, adapter.format)
    try:
        trip = normalize_trip(filtered.safe_row, adapter.required_fields, adapter.record_kind)
    except RowValidationError as exc:
        return RowClassification(row.row_number, RowOutcome.ERROR, row.raw_ref, reason=exc.message)

    if trip.is_cancelled:
        return RowClassification(
            row.row_number,
            RowOutcome.CANCELLED,
            row.raw_ref,
            trip=trip,
            reason="trip cancelled by broker",
        )
    return RowClassification(row.row_number, RowOutcome.VALID, row.raw_ref, trip=trip)


def trip_payload(trip: NormalizedTrip, kept_fields: Iterable[str]) -> dict[str, object]:
    payload: dict[str, object] = {}
    for field_name in sorted(kept_fields):
        value = getattr(trip, field_name)
        payload[field_name] = value.isoformat() if isinstance(value, date) else value
    payload["is_cancelled"] = trip.is_cancelled
    payload["is_no_show"] = trip.is_no_show
    payload["was_on_time"] = trip.was_on_time
    return payload
