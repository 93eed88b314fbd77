from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
import csv
import io
from types import MappingProxyType
from typing import ClassVar

from tripledger.allowlist import normalize_header
from tripledger.errors import StructuralParseError
from tripledger.schemas import ParsedFile, RawRow, RecordKind


class FormatAdapter(ABC):
    format: ClassVar[str]
    vendor: ClassVar[str]
    record_kind: ClassVar[RecordKind]
    column_map: ClassVar[Mapping[str, tuple[str, ...]]]
    required_fields: ClassVar[tuple[str, ...]] = ("external_trip_id", "service_date")

    @abstractmethod
    def matches(self, text: str) -> bool:
        """Return True when the text carries this vendor's structural signature."""

    @abstractmethod
    def parse(self, text: str) -> ParsedFile:
        """Tokenize the text into raw rows, or raise StructuralParseError."""

    def known_aliases(self) -> frozenset[str]:
        return frozenset(alias for aliases in self.column_map.values() for alias in aliases)

    def unmapped_columns(self, headers: Iterable[str]) -> tuple[str, ...]:
        known = self.known_aliases()
        return tuple(header for header in headers if normalize_header(header) not in known)

    def _check_headers(self, headers: Sequence[str]) -> None:
        if not any(header.strip() for header in headers):
            raise StructuralParseError(f"{self.format}: header row is empty")

        seen: dict[str, str] = {}
        for header in headers:
            key = normalize_header(header)
            if not key:
                raise StructuralParseError(f"{self.format}: header row has an unnamed column")
            if key in seen:
                raise StructuralParseError(
                    f"{self.format}: duplicate column '{header}' (conflicts with '{seen[key]}')"
                )
            seen[key] = header

        for field_name in self.required_fields:
            aliases = set(self.column_map[field_name])
            if not aliases.intersection(seen):
                raise StructuralParseError(f"{self.format}: missing required column for {field_name}")

    def _build_rows(self, headers: Sequence[str], records: Iterable[Sequence[str]]) -> tuple[RawRow, ...]:
        rows: list[RawRow] = []
        width = len(headers)
        for row_number, cells in enumerate(records, start=1):
            padded = list(cells[:width]) + [""] * (width - len(cells))
            values = MappingProxyType(dict(zip(headers, padded)))

            if not any(cell.strip() for cell in cells):
                rows.append(RawRow(row_number=row_number, values=values, blank=True))
                continue

            error = None
            if len(cells) != width:
                error = f"expected {width} fields, found {len(cells)}"
            rows.append(RawRow(row_number=row_number, values=values, error=error))
        return tuple(rows)


class DelimitedAdapter(FormatAdapter):
    # Every group needs at least one normalized header present.
    signature: ClassVar[tuple[frozenset[str], ...]]

    def _read_records(self, text: str) -> list[list[str]]:
        try:
            records = list(csv.reader(io.StringIO(text, newline=""), strict=True))
        except csv.Error as exc:
            raise StructuralParseError(f"{self.format}: malformed CSV: {exc}") from exc

        while records and not any(cell.strip() for cell in records[0]):
            records.pop(0)
        while records and not any(cell.strip() for cell in records[-1]):
            records.pop()
        return records

    def _header_keys(self, text: str) -> set[str]:
        for line in text.splitlines():
            if line.strip():
                try:
                    cells = next(csv.reader([line]))
                except csv.Error:
                    return set()
                return {normalize_header(cell) for cell in cells}
        return set()

    def matches(self, text: str) -> bool:
        keys = self._header_keys(text)
        return bool(keys) and all(group & keys for group in self.signature)

    def parse(self, text: str) -> ParsedFile:
        records = self._read_records(text)
        if not records:
            raise StructuralParseError(f"{self.format}: file is empty")

        headers = tuple(cell.strip() for cell in records[0])
        self._check_headers(headers)
        data = records[1:]
        if not data:
            raise StructuralParseError(f"{self.format}: no data rows after header")

        return ParsedFile(
            format=self.format,
            headers=headers,
            rows=self._build_rows(headers, [[cell.strip() for cell in record] for record in data]),
            unmapped_columns=self.unmapped_columns(headers),
        )


class MtmCsvAdapter(DelimitedAdapter):
    format = "mtm_csv"
    vendor = "mtm"
    record_kind = RecordKind.MANIFEST
    signature = (frozenset({"confirmationnumber", "confirmationno", "confirmation"}),)
    column_map = MappingProxyType(
        {
            "external_trip_id": ("confirmationnumber", "confirmationno", "confirmation", "tripid"),
            "service_date": ("dos", "dateofservice", "servicedate", "date"),
            "mobility_type": ("los", "levelofservice", "servicetype"),
            "appointment_time": ("appttime", "appointmenttime", "appointment", "appt"),
            "pickup_time": ("scheduledpickup", "pickuptime", "pickup"),
            "pickup_window_start": ("pickupwindowstart", "windowstart"),
            "pickup_window_end": ("pickupwindowend", "windowend"),
            "funding_source": ("plan", "fundingsource", "funding", "payer"),
            "pickup_city": ("pickupcity", "fromcity", "origincity"),
            "dropoff_city": ("dropoffcity", "tocity", "destcity"),
            "miles": ("estimatedmiles", "miles", "distance"),
            "trip_status": ("tripstatus", "status"),
        }
    )


class Access2CareCsvAdapter(DelimitedAdapter):
    format = "a2c_csv"
    vendor = "access2care"
    record_kind = RecordKind.MANIFEST
    signature = (frozenset({"a2cid", "a2ctripid"}),)
    column_map = MappingProxyType(
        {
            "external_trip_id": ("a2cid", "a2ctripid", "tripnumber"),
            "service_date": ("tripdate", "servicedate", "date"),
            "mobility_type": ("modetype", "los", "levelofservice"),
            "appointment_time": ("appointmenttime", "appttime", "appointment"),
            "pickup_time": ("scheduledpickup", "pickuptime", "pickup"),
            "funding_source": ("healthplan", "fundingsource", "payer"),
            "pickup_city": ("origincity", "pickupcity"),
            "dropoff_city": ("destcity", "dropoffcity"),
            "miles": ("miles", "distance"),
            "trip_status": ("tripstatus", "status"),
        }
    )


class MediRouteCsvAdapter(DelimitedAdapter):
    format = "mediroute_csv"
    vendor = "mediroute"
    record_kind = RecordKind.ACTUAL
    required_fields = ("external_trip_id", "service_date", "driver_name")
    signature = (frozenset({"tripid"}), frozenset({"driver", "drivername"}))
    column_map = MappingProxyType(
        {
            "external_trip_id": ("tripid",),
            "service_date": ("date", "servicedate", "tripdate"),
            "driver_name": ("driver", "drivername"),
            "vehicle_unit": ("vehicle", "vehicleunit", "unit"),
            "mobility_type": ("space", "mobilitytype", "type"),
            "pickup_time": ("reqpickup", "scheduledpickup", "pickuptime"),
            "appointment_time": ("appointment", "appointmenttime", "appt"),
            "actual_pickup_time": ("pickuparrive", "actualpickuparrive", "pickupperform", "actualpickupperform"),
            "actual_dropoff_time": (
                "dropoffarrive",
                "actualdropoffarrive",
                "dropoffperform",
                "actualdropoffperform",
            ),
            # Routed distance is the payroll source of truth when both are present.
            "miles": ("routeddistance", "distance", "miles", "importdistance"),
            "pickup_lat": ("pickuplat", "pickuplatitude"),
            "pickup_lon": ("pickuplon", "pickuplongitude"),
            "dropoff_lat": ("dropofflat", "dropofflatitude"),
            "dropoff_lon": ("dropofflon", "dropofflongitude"),
            "trip_status": ("status", "tripstatus"),
            "trip_type": ("triptype",),
            "is_standing": ("standing", "standingorder"),
            "is_will_call": ("willcall",),
        }
    )


class ModivcareTextAdapter(FormatAdapter):
    """Trip tables from text extracted out of ModivCare manifest PDFs.

    Extraction yields one pipe-delimited line per table row, interleaved with
    page furniture (titles, provider banners, page numbers) and with the table
    header repeated at the top of every page. Only pipe-delimited lines after
    the first header are rows; repeated headers are not counted.
    """

    format = "modivcare_text"
    vendor = "modivcare"
    record_kind = RecordKind.MANIFEST
    marker = "modivcare"
    marker_scan_lines = 15
    column_map = MappingProxyType(
        {
            "external_trip_id": ("tripid", "tripnumber"),
            "service_date": ("date", "servicedate", "tripdate"),
            "mobility_type": ("los", "levelofservice", "spacetype", "type"),
            "appointment_time": ("appttime", "appointmenttime", "appointment"),
            "pickup_time": ("pickuptime", "reqpickup", "pickup"),
            "pickup_window_start": ("windowstart", "pickupwindowstart"),
            "pickup_window_end": ("windowend", "pickupwindowend"),
            "funding_source": ("fundingsource", "funding", "payer"),
            "pickup_city": ("pickupcity", "pucity", "origincity"),
            "dropoff_city": ("dropoffcity", "docity", "destcity"),
            "miles": ("estmiles", "estimatedmiles", "miles"),
            "trip_status": ("status", "tripstatus"),
        }
    )

    @staticmethod
    def _split_cells(line: str) -> list[str]:
        stripped = line.strip()
        if stripped.startswith("|"):
            stripped = stripped[1:]
        if stripped.endswith("|"):
            stripped = stripped[:-1]
        return [cell.strip() for cell in stripped.split("|")]

    def _find_header(self, lines: Sequence[str]) -> tuple[int, tuple[str, ...]] | None:
        trip_id_aliases = set(self.column_map["external_trip_id"])
        for index, line in enumerate(lines):
            if "|" not in line:
                continue
            cells = self._split_cells(line)
            if trip_id_aliases.intersection(normalize_header(cell) for cell in cells):
                return index, tuple(cells)
        return None

    def matches(self, text: str) -> bool:
        lines = [line for line in text.splitlines() if line.strip()]
        head = lines[: self.marker_scan_lines]
        if not any(self.marker in normalize_header(line) for line in head):
            return False
        return self._find_header(lines) is not None

    def parse(self, text: str) -> ParsedFile:
        lines = text.splitlines()
        located = self._find_header(lines)
        if located is None:
            raise StructuralParseError(f"{self.format}: no trip table header found in extracted text")

        index, headers = located
        self._check_headers(headers)
        header_keys = [normalize_header(header) for header in headers]

        records: list[list[str]] = []
        for line in lines[index + 1 :]:
            if "|" not in line:
                continue
            cells = self._split_cells(line)
            if [normalize_header(cell) for cell in cells] == header_keys:
                continue
            records.append(cells)

        if not records:
            raise StructuralParseError(f"{self.format}: no data rows after header")

        return ParsedFile(
            format=self.format,
            headers=headers,
            rows=self._build_rows(headers, records),
            unmapped_columns=self.unmapped_columns(headers),
        )


ADAPTERS: tuple[FormatAdapter, ...] = (
    MtmCsvAdapter(),
    Access2CareCsvAdapter(),
    MediRouteCsvAdapter(),
    ModivcareTextAdapter(),
)


def get_adapter(format_id: str) -> FormatAdapter:
    for adapter in ADAPTERS:
        if adapter.format == format_id:
            return adapter
    raise KeyError(f"unknown format: {format_id}")
