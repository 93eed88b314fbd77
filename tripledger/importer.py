from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tripledger.adapters import FormatAdapter, get_adapter
from tripledger.allowlist import ColumnAllowlistPolicy, load_policy, split_columns
from tripledger.audit_log import append_entry, build_entry, list_entries
from tripledger.auditor import audit_completeness
from tripledger.batch_store import (
    build_trip_record,
    create_batch,
    mark_batch_completed,
    mark_batch_failed,
    mark_batch_processing,
)
from tripledger.config import Settings
from tripledger.db_models import ImportBatch
from tripledger.dedup import find_completed_batch, fingerprint_content, insert_trip_once
from tripledger.detection import decode_content, detect_format
from tripledger.errors import DuplicateFileError, DuplicateRowError, StructuralParseError, UnrecognizedFormatError
from tripledger.normalize import classify_row, trip_payload
from tripledger.partitions import resolve_partition
from tripledger.reports import write_proof_report
from tripledger.retry import RetryExhaustedError, run_with_retries
from tripledger.schemas import (
    CompletenessProof,
    DateRange,
    ManifestImportResult,
    ManifestPreviewResult,
    ParsedFile,
    PartitionKey,
    RecordKind,
    RowClassification,
    RowError,
    RowOutcome,
)


logger = logging.getLogger(__name__)
T = TypeVar("T")


class ImportState(StrEnum):
    UPLOADED = "uploaded"
    DETECTED = "detected"
    PARSED = "parsed"
    PREVIEWED = "previewed"
    COMMITTING = "committing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[ImportState, frozenset[ImportState]] = {
    ImportState.UPLOADED: frozenset({ImportState.DETECTED, ImportState.FAILED}),
    ImportState.DETECTED: frozenset({ImportState.PARSED, ImportState.FAILED}),
    ImportState.PARSED: frozenset({ImportState.PREVIEWED, ImportState.FAILED}),
    ImportState.PREVIEWED: frozenset({ImportState.COMMITTING}),
    ImportState.COMMITTING: frozenset({ImportState.COMPLETED}),
    ImportState.COMPLETED: frozenset(),
    ImportState.FAILED: frozenset(),
}


@dataclass
class ImportContext:
    partition: PartitionKey
    file_name: str
    fingerprint: str
    state: ImportState = ImportState.UPLOADED
    adapter: FormatAdapter | None = None
    parsed: ParsedFile | None = None
    classifications: list[RowClassification] = field(default_factory=list)
    extracted_columns: list[str] = field(default_factory=list)
    ignored_columns: list[str] = field(default_factory=list)
    outcomes: dict[int, RowOutcome] = field(default_factory=dict)
    write_errors: dict[int, str] = field(default_factory=dict)

    def advance(self, target: ImportState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal import transition {self.state} -> {target}")
        self.state = target

    @property
    def format_id(self) -> str | None:
        return self.adapter.format if self.adapter else None

    @property
    def total_rows(self) -> int:
        return len(self.parsed.rows) if self.parsed else 0

    def with_outcome(self, outcome: RowOutcome) -> list[RowClassification]:
        return [row for row in self.classifications if row.outcome is outcome]

    def service_dates(self) -> DateRange | None:
        dates = [row.trip.service_date for row in self.classifications if row.trip is not None]
        if not dates:
            return None
        return DateRange(start=min(dates), end=max(dates))


def _count_los(rows: list[RowClassification]) -> dict[str, int]:
    counts = Counter(row.trip.mobility_type for row in rows if row.trip is not None)
    return dict(sorted(counts.items()))


class TripImporter:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        policy: ColumnAllowlistPolicy | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.policy = policy or load_policy(settings.allowlist_version)

    def preview(
        self,
        content: bytes | str,
        file_name: str,
        *,
        opco_code: str | None,
        broker_account_code: str | None,
    ) -> ManifestPreviewResult:
        with self.session_factory() as db:
            partition = resolve_partition(db, opco_code, broker_account_code)
            fingerprint = fingerprint_content(content)
            existing = find_completed_batch(db, fingerprint, partition)

        context = ImportContext(partition=partition, file_name=file_name, fingerprint=fingerprint)
        self._prepare(context, content)
        return self._preview_result(context, existing)

    def commit(
        self,
        content: bytes | str,
        file_name: str,
        *,
        opco_code: str | None,
        broker_account_code: str | None,
        force: bool = False,
    ) -> ManifestImportResult:
        with self.session_factory() as db:
            partition = resolve_partition(db, opco_code, broker_account_code)
            fingerprint = fingerprint_content(content)
            existing = find_completed_batch(db, fingerprint, partition)
            if existing is not None and not force:
                logger.warning(
                    "duplicate file refused",
                    extra={"existing_batch_id": existing.id, "partition": partition.label()},
                )
                raise DuplicateFileError(existing.id, fingerprint)

            batch = create_batch(
                db,
                partition=partition,
                fingerprint=fingerprint,
                file_name=file_name,
                file_size=len(content.encode("utf-8") if isinstance(content, str) else content),
                allowlist_version=self.policy.version,
                forced=existing is not None,
            )
            batch_id = batch.id
            context = ImportContext(partition=partition, file_name=file_name, fingerprint=fingerprint)
            try:
                self._prepare(context, content)
            except (UnrecognizedFormatError, StructuralParseError) as exc:
                mark_batch_failed(db, batch, error=str(exc), format_id=context.format_id)
                logger.error(
                    "import failed before persistence",
                    extra={"batch_id": batch_id, "format": context.format_id, "error": str(exc)},
                )
                raise

            context.advance(ImportState.COMMITTING)
            mark_batch_processing(
                db,
                batch,
                format_id=context.adapter.format,
                vendor=context.adapter.vendor,
                total_rows=context.total_rows,
                ignored_columns=context.ignored_columns,
                service_dates=context.service_dates(),
            )

            try:
                for classification in context.classifications:
                    context.outcomes[classification.row_number] = self._persist_row(db, batch, context, classification)
            finally:
                # An aborted loop still closes the batch; unwritten rows surface as missing in the proof.
                db.rollback()
                proof = audit_completeness(context.total_rows, list_entries(db, batch_id), batch_id=batch_id)
                mark_batch_completed(db, batch, proof)
                context.advance(ImportState.COMPLETED)

        result = self._import_result(context, batch_id, proof, forced=existing is not None)
        report_path = write_proof_report(
            self.settings.report_dir,
            result=result,
            proof=proof,
            partition=partition,
            allowlist_version=self.policy.version,
        )
        log = logger.info if proof.is_complete else logger.error
        log(
            "import committed",
            extra={
                "batch_id": batch_id,
                "format": context.format_id,
                "partition": partition.label(),
                "fingerprint": fingerprint[:16],
                "expected_rows": proof.expected_rows,
                "accounted_rows": proof.accounted_rows,
                "imported_rows": proof.imported_rows,
                "duplicate_rows": proof.duplicate_rows,
                "error_rows": proof.error_rows,
                "is_complete": proof.is_complete,
                "report_path": str(report_path),
            },
        )
        return result

    def _prepare(self, context: ImportContext, content: bytes | str) -> None:
        # Single parse/filter/classify path shared by preview and commit.
        try:
            context.adapter = get_adapter(detect_format(content, context.file_name))
            context.advance(ImportState.DETECTED)
            context.parsed = context.adapter.parse(decode_content(content))
            context.advance(ImportState.PARSED)
        except (UnrecognizedFormatError, StructuralParseError):
            context.advance(ImportState.FAILED)
            raise

        adapter = context.adapter
        context.extracted_columns, context.ignored_columns = split_columns(
            context.parsed.headers, adapter.column_map, self.policy, adapter.format
        )
        context.classifications = [classify_row(adapter, row, self.policy) for row in context.parsed.rows]
        context.advance(ImportState.PREVIEWED)

    def _write(self, db: Session, fn: Callable[[], T]) -> T:
        def attempt() -> T:
            try:
                return fn()
            except SQLAlchemyError:
                db.rollback()
                raise

        return run_with_retries(
            attempt,
            max_retries=self.settings.max_write_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
        )

    def _persist_row(
        self,
        db: Session,
        batch: ImportBatch,
        context: ImportContext,
        classification: RowClassification,
    ) -> RowOutcome:
        batch_id = batch.id
        adapter = context.adapter
        actual = adapter.record_kind is RecordKind.ACTUAL
        # Cancelled actual trips are kept for driver history; cancelled manifest rows are audit-only.
        if classification.outcome is RowOutcome.VALID:
            outcome, reason = RowOutcome.IMPORTED, None
        elif classification.outcome is RowOutcome.CANCELLED and actual:
            outcome, reason = RowOutcome.CANCELLED, classification.reason
        else:
            self._write(db, lambda: append_entry(db, build_entry(batch_id, classification)))
            return classification.outcome

        try:
            self._write(
                db,
                lambda: insert_trip_once(
                    db,
                    build_trip_record(
                        batch,
                        vendor=adapter.vendor,
                        partition=context.partition,
                        trip=classification.trip,
                        dedup=actual,
                    ),
                    build_entry(batch_id, classification, outcome=outcome, reason=reason),
                ),
            )
        except DuplicateRowError as exc:
            self._write(
                db,
                lambda: append_entry(
                    db, build_entry(batch_id, classification, outcome=RowOutcome.DUPLICATE, reason=str(exc))
                ),
            )
            return RowOutcome.DUPLICATE
        except (RetryExhaustedError, SQLAlchemyError) as exc:
            message = f"write failed: {exc}"
            logger.error(
                "row write failed",
                extra={"batch_id": batch_id, "row_number": classification.row_number, "error": str(exc)},
            )
            self._write(
                db,
                lambda: append_entry(
                    db, build_entry(batch_id, classification, outcome=RowOutcome.ERROR, reason=message)
                ),
            )
            context.write_errors[classification.row_number] = message
            return RowOutcome.ERROR
        return outcome

    def _in_file_duplicates(self, context: ImportContext) -> set[int]:
        # Actual trips dedupe on trip id, so a repeated id in one export imports once.
        if context.adapter.record_kind is not RecordKind.ACTUAL:
            return set()
        seen: set[str] = set()
        repeated: set[int] = set()
        for row in context.classifications:
            if row.trip is None or row.outcome not in (RowOutcome.VALID, RowOutcome.CANCELLED):
                continue
            if row.trip.external_trip_id in seen:
                repeated.add(row.row_number)
            seen.add(row.trip.external_trip_id)
        return repeated

    def _preview_result(self, context: ImportContext, existing: ImportBatch | None) -> ManifestPreviewResult:
        repeated = self._in_file_duplicates(context)
        valid = [row for row in context.with_outcome(RowOutcome.VALID) if row.row_number not in repeated]
        cancelled = [row for row in context.with_outcome(RowOutcome.CANCELLED) if row.row_number not in repeated]
        kept = self.policy.kept_fields(context.format_id)
        with_trips = [row for row in context.classifications if row.trip is not None]

        errors: list[str] = []
        if existing is not None:
            errors.append(f"file already imported under this partition as batch {existing.id}")
        errors.extend(
            f"row {row.row_number}: {row.reason}" for row in context.with_outcome(RowOutcome.ERROR)
        )

        return ManifestPreviewResult(
            format=context.format_id,
            file_fingerprint=context.fingerprint,
            allowlist_version=self.policy.version,
            total_rows=context.total_rows,
            valid_rows=len(valid),
            cancelled_rows=len(cancelled),
            skipped_rows=len(context.with_outcome(RowOutcome.SKIPPED)),
            error_rows=len(context.with_outcome(RowOutcome.ERROR)),
            duplicate_rows=len(repeated),
            service_date_range=context.service_dates(),
            los_counts=_count_los(valid),
            funding_sources=sorted({row.trip.funding_source for row in valid if row.trip.funding_source}),
            sample_trips=[
                trip_payload(row.trip, kept) for row in with_trips[: self.settings.preview_sample_size]
            ],
            allowed_columns=list(context.extracted_columns),
            ignored_columns=list(context.ignored_columns),
            is_duplicate=existing is not None,
            errors=errors,
        )

    def _import_result(
        self, context: ImportContext, batch_id: int, proof: CompletenessProof, *, forced: bool
    ) -> ManifestImportResult:
        imported = [
            row for row in context.classifications if context.outcomes.get(row.row_number) is RowOutcome.IMPORTED
        ]
        errors = [
            RowError(
                row=row.row_number,
                message=context.write_errors.get(row.row_number) or row.reason or "invalid row",
            )
            for row in context.classifications
            if context.outcomes.get(row.row_number, row.outcome) is RowOutcome.ERROR
        ]

        warnings: list[str] = []
        if forced:
            warnings.append("file was previously imported under this partition; re-commit was forced")
        if context.ignored_columns:
            warnings.append(
                f"SECURITY: {len(context.ignored_columns)} columns ignored (not in allowlist "
                f"{self.policy.version}): {', '.join(context.ignored_columns)}"
            )
        if not proof.is_complete:
            warnings.append(
                f"accounted rows ({proof.accounted_rows}) do not reconcile with expected rows "
                f"({proof.expected_rows}); missing rows: {', '.join(map(str, proof.missing_rows)) or 'none'}"
            )

        return ManifestImportResult(
            import_id=batch_id,
            format=context.format_id,
            file_fingerprint=context.fingerprint,
            total_rows=context.total_rows,
            imported_rows=proof.imported_rows,
            duplicate_rows=proof.duplicate_rows,
            cancelled_rows=proof.cancelled_rows,
            skipped_rows=proof.skipped_rows,
            error_rows=proof.error_rows,
            los_counts=_count_los(imported),
            extracted_columns=list(context.extracted_columns),
            ignored_columns=list(context.ignored_columns),
            expected_rows=proof.expected_rows,
            accounted_rows=proof.accounted_rows,
            missing_rows=list(proof.missing_rows),
            is_complete=proof.is_complete,
            errors=errors,
            warnings=warnings,
        )
