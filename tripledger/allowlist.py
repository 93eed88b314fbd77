"""Versioned column allowlist and the row filter that enforces it.

The policy is the only thing that decides which vendor data may leave an
adapter. Adapters map vendor headers to canonical field names; the policy
lists, per format, which canonical fields are kept. A column reaches a
``SafeRow`` only when both agree, so a vendor column nobody has vetted is
dropped no matter what it is called.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from functools import lru_cache
import logging
import re
from types import MappingProxyType

from tripledger.schemas import RawRow, SafeRow


logger = logging.getLogger(__name__)

CANONICAL_FIELDS = frozenset(
    {
        "external_trip_id",
        "service_date",
        "mobility_type",
        "trip_status",
        "appointment_time",
        "pickup_time",
        "pickup_window_start",
        "pickup_window_end",
        "actual_pickup_time",
        "actual_dropoff_time",
        "funding_source",
        "pickup_city",
        "dropoff_city",
        "driver_name",
        "vehicle_unit",
        "pickup_lat",
        "pickup_lon",
        "dropoff_lat",
        "dropoff_lon",
        "miles",
        "trip_type",
        "is_standing",
        "is_will_call",
    }
)

_HEADER_NOISE = re.compile(r"[^a-z0-9]")


def normalize_header(name: str) -> str:
    return _HEADER_NOISE.sub("", name.lower())


@dataclass(frozen=True, eq=False)
class ColumnAllowlistPolicy:
    version: str
    kept: Mapping[str, frozenset[str]]

    def __post_init__(self) -> None:
        frozen: dict[str, frozenset[str]] = {}
        for format_id, fields in self.kept.items():
            unknown = set(fields) - CANONICAL_FIELDS
            if unknown:
                raise ValueError(
                    f"allowlist {self.version} keeps non-canonical fields for {format_id}: {sorted(unknown)}"
                )
            frozen[format_id] = frozenset(fields)
        object.__setattr__(self, "kept", MappingProxyType(frozen))

    def kept_fields(self, format_id: str) -> frozenset[str]:
        return self.kept.get(format_id, frozenset())


@dataclass(frozen=True)
class FilterResult:
    safe_row: SafeRow
    ignored_columns: tuple[str, ...]


_MANIFEST_FIELDS = frozenset(
    {
        "external_trip_id",
        "service_date",
        "mobility_type",
        "trip_status",
        "appointment_time",
        "pickup_time",
        "pickup_window_start",
        "pickup_window_end",
        "funding_source",
        "pickup_city",
        "dropoff_city",
        "miles",
    }
)

_ACTUAL_FIELDS = frozenset(
    {
        "external_trip_id",
        "service_date",
        "mobility_type",
        "trip_status",
        "appointment_time",
        "pickup_time",
        "actual_pickup_time",
        "actual_dropoff_time",
        "driver_name",
        "vehicle_unit",
        "miles",
    }
)

_GPS_FIELDS = frozenset({"pickup_lat", "pickup_lon", "dropoff_lat", "dropoff_lon"})

_TRIP_FLAG_FIELDS = frozenset({"trip_type", "is_standing", "is_will_call"})

POLICY_VERSIONS: Mapping[str, Mapping[str, frozenset[str]]] = MappingProxyType(
    {
        "2026.1": {
            "mtm_csv": _MANIFEST_FIELDS,
            "a2c_csv": _MANIFEST_FIELDS,
            "modivcare_text": _MANIFEST_FIELDS,
            "mediroute_csv": _ACTUAL_FIELDS,
        },
        # GPS coordinates approved for actual-trip imports.
        "2026.2": {
            "mtm_csv": _MANIFEST_FIELDS,
            "a2c_csv": _MANIFEST_FIELDS,
            "modivcare_text": _MANIFEST_FIELDS,
            "mediroute_csv": _ACTUAL_FIELDS | _GPS_FIELDS,
        },
        # Standing-order and will-call flags approved for actual-trip imports.
        "2026.3": {
            "mtm_csv": _MANIFEST_FIELDS,
            "a2c_csv": _MANIFEST_FIELDS,
            "modivcare_text": _MANIFEST_FIELDS,
            "mediroute_csv": _ACTUAL_FIELDS | _GPS_FIELDS | _TRIP_FLAG_FIELDS,
        },
    }
)


@lru_cache(maxsize=None)
def load_policy(version: str) -> ColumnAllowlistPolicy:
    if version not in POLICY_VERSIONS:
        raise ValueError(f"unknown allowlist version: {version}")
    return ColumnAllowlistPolicy(version=version, kept=POLICY_VERSIONS[version])


def _route_columns(
    headers: Iterable[str],
    column_map: Mapping[str, tuple[str, ...]],
    kept: frozenset[str],
) -> tuple[dict[str, list[str]], list[str]]:
    alias_index: dict[str, tuple[str, int]] = {}
    for canonical, aliases in column_map.items():
        for rank, alias in enumerate(aliases):
            alias_index.setdefault(alias, (canonical, rank))

    ranked: dict[str, list[tuple[int, str]]] = {}
    ignored: list[str] = []
    for header in headers:
        match = alias_index.get(normalize_header(header))
        if match is None or match[0] not in kept:
            ignored.append(header)
            continue
        canonical, rank = match
        ranked.setdefault(canonical, []).append((rank, header))

    routes = {canonical: [header for _, header in sorted(items)] for canonical, items in ranked.items()}
    return routes, ignored


def filter_row(
    row: RawRow,
    column_map: Mapping[str, tuple[str, ...]],
    policy: ColumnAllowlistPolicy,
    format_id: str,
) -> FilterResult:
    routes, ignored = _route_columns(row.values.keys(), column_map, policy.kept_fields(format_id))

    values: dict[str, str] = {}
    for canonical, headers in routes.items():
        for header in headers:
            value = (row.values.get(header) or "").strip()
            if value:
                values[canonical] = value
                break

    return FilterResult(
        safe_row=SafeRow(row_number=row.row_number, values=MappingProxyType(values)),
        ignored_columns=tuple(ignored),
    )


def split_columns(
    headers: Iterable[str],
    column_map: Mapping[str, tuple[str, ...]],
    policy: ColumnAllowlistPolicy,
    format_id: str,
) -> tuple[list[str], list[str]]:
    header_list = list(headers)
    routes, ignored = _route_columns(header_list, column_map, policy.kept_fields(format_id))
    routed = {header for names in routes.values() for header in names}
    extracted = [header for header in header_list if header in routed]

    logger.info(
        "allowlist applied",
        extra={
            "format": format_id,
            "allowlist_version": policy.version,
            "extracted_column_count": len(extracted),
            "ignored_column_count": len(ignored),
            "ignored_columns": ignored,
        },
    )
    return extracted, ignored
