from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from enum import StrEnum
import hashlib


class RecordKind(StrEnum):
    MANIFEST = "manifest"
    ACTUAL = "actual"


class RowOutcome(StrEnum):
    VALID = "valid"
    IMPORTED = "imported"
    DUPLICATE = "duplicate"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    ERROR = "error"


# Terminal outcomes that may appear in the audit log.
AUDIT_OUTCOMES = (
    RowOutcome.IMPORTED,
    RowOutcome.DUPLICATE,
    RowOutcome.CANCELLED,
    RowOutcome.SKIPPED,
    RowOutcome.ERROR,
)


@dataclass(frozen=True)
class PartitionKey:
    opco_code: str
    broker_code: str
    broker_account_code: str

    def label(self) -> str:
        return f"{self.opco_code}/{self.broker_code}/{self.broker_account_code}"


@dataclass(frozen=True)
class RawRow:
    row_number: int
    values: Mapping[str, str]
    blank: bool = False
    error: str | None = None

    @property
    def raw_ref(self) -> str:
        digest = hashlib.sha256("\x1f".join(self.values.values()).encode("utf-8"))
        return digest.hexdigest()[:16]


@dataclass(frozen=True)
class ParsedFile:
    format: str
    headers: tuple[str, ...]
    rows: tuple[RawRow, ...]
    unmapped_columns: tuple[str, ...]


@dataclass(frozen=True)
class SafeRow:
    row_number: int
    values: Mapping[str, str]


@dataclass(frozen=True)
class NormalizedTrip:
    external_trip_id: str
    service_date: date
    mobility_type: str
    trip_status: str
    appointment_time: str | None = None
    pickup_time: str | None = None
    pickup_window_start: str | None = None
    pickup_window_end: str | None = None
    actual_pickup_time: str | None = None
    actual_dropoff_time: str | None = None
    funding_source: str | None = None
    pickup_city: str | None = None
    dropoff_city: str | None = None
    driver_name: str | None = None
    vehicle_unit: str | None = None
    pickup_lat: float | None = None
    pickup_lon: float | None = None
    dropoff_lat: float | None = None
    dropoff_lon: float | None = None
    miles: float | None = None
    trip_type: str | None = None
    is_standing: bool = False
    is_will_call: bool = False
    # None when either the scheduled or the actual pickup time is unknown.
    was_on_time: bool | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.trip_status == "cancelled"

    @property
    def is_no_show(self) -> bool:
        return self.trip_status == "no_show"


@dataclass(frozen=True)
class RowClassification:
    row_number: int
    outcome: RowOutcome
    raw_ref: str
    trip: NormalizedTrip | None = None
    reason: str | None = None


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date


@dataclass(frozen=True)
class RowError:
    row: int
    message: str


@dataclass(frozen=True)
class CompletenessProof:
    batch_id: int | None
    expected_rows: int
    accounted_rows: int
    imported_rows: int
    duplicate_rows: int
    cancelled_rows: int
    skipped_rows: int
    error_rows: int
    missing_rows: tuple[int, ...]
    repeated_rows: tuple[int, ...]
    unexpected_rows: tuple[int, ...]
    is_complete: bool


@dataclass(frozen=True)
class ManifestPreviewResult:
    format: str
    file_fingerprint: str
    allowlist_version: str
    total_rows: int
    valid_rows: int
    cancelled_rows: int
    skipped_rows: int
    error_rows: int
    duplicate_rows: int
    service_date_range: DateRange | None
    los_counts: dict[str, int]
    funding_sources: list[str]
    sample_trips: list[dict[str, object]]
    allowed_columns: list[str]
    ignored_columns: list[str]
    is_duplicate: bool
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ManifestImportResult:
    import_id: int
    format: str
    file_fingerprint: str
    total_rows: int
    imported_rows: int
    duplicate_rows: int
    cancelled_rows: int
    skipped_rows: int
    error_rows: int
    los_counts: dict[str, int]
    extracted_columns: list[str]
    ignored_columns: list[str]
    expected_rows: int
    accounted_rows: int
    missing_rows: list[int]
    is_complete: bool
    errors: list[RowError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DriverSummary:
    driver_name: str
    completed_trips: int
    cancelled_trips: int
    no_show_trips: int
    total_miles: float
    on_time_count: int
    late_count: int
    on_time_percent: int
