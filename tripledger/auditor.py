"""Nothing-dropped proof for import batches.

Every input row must end in exactly one terminal outcome in the audit log.
The auditor recomputes that from the entries alone, so it can be pointed at
persisted batches or at synthetic entries in tests.
"""

from collections import Counter
from collections.abc import Iterable
import logging
from typing import Protocol

from sqlalchemy.orm import Session

from tripledger.audit_log import list_entries
from tripledger.batch_store import get_batch, list_batches
from tripledger.schemas import CompletenessProof, RowOutcome


logger = logging.getLogger(__name__)


class AuditedRow(Protocol):
    row_number: int
    outcome: str


def audit_completeness(total_rows: int, entries: Iterable[AuditedRow], *, batch_id: int | None = None) -> CompletenessProof:
    entry_list = list(entries)
    outcomes = Counter(str(entry.outcome) for entry in entry_list)
    row_hits = Counter(entry.row_number for entry in entry_list)

    expected_numbers = set(range(1, total_rows + 1))
    missing = sorted(expected_numbers - set(row_hits))
    repeated = sorted(number for number, hits in row_hits.items() if hits > 1)
    unexpected = sorted(number for number in row_hits if number not in expected_numbers)

    imported = outcomes[RowOutcome.IMPORTED.value]
    duplicate = outcomes[RowOutcome.DUPLICATE.value]
    cancelled = outcomes[RowOutcome.CANCELLED.value]
    skipped = outcomes[RowOutcome.SKIPPED.value]
    errored = outcomes[RowOutcome.ERROR.value]
    accounted = imported + duplicate + cancelled + skipped + errored

    is_complete = not missing and not repeated and not unexpected and accounted == total_rows
    return CompletenessProof(
        batch_id=batch_id,
        expected_rows=total_rows,
        accounted_rows=accounted,
        imported_rows=imported,
        duplicate_rows=duplicate,
        cancelled_rows=cancelled,
        skipped_rows=skipped,
        error_rows=errored,
        missing_rows=tuple(missing),
        repeated_rows=tuple(repeated),
        unexpected_rows=tuple(unexpected),
        is_complete=is_complete,
    )


def verify_batch(db: Session, batch_id: int) -> CompletenessProof:
    batch = get_batch(db, batch_id)
    if batch is None:
        raise LookupError(f"import batch {batch_id} not found")

    proof = audit_completeness(batch.total_rows, list_entries(db, batch_id), batch_id=batch_id)
    if not proof.is_complete:
        logger.error(
            "completeness proof failed",
            extra={
                "batch_id": batch_id,
                "expected_rows": proof.expected_rows,
                "accounted_rows": proof.accounted_rows,
                "missing_rows": list(proof.missing_rows),
                "repeated_rows": list(proof.repeated_rows),
                "unexpected_rows": list(proof.unexpected_rows),
            },
        )
    return proof


def verify_completed_batches(db: Session) -> list[CompletenessProof]:
    return [verify_batch(db, batch.id) for batch in list_batches(db, status="completed")]
