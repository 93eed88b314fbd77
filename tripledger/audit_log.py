from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.db_models import ImportAuditEntry
from tripledger.schemas import AUDIT_OUTCOMES, RowClassification, RowOutcome


def build_entry(
    batch_id: int,
    classification: RowClassification,
    *,
    outcome: RowOutcome | None = None,
    reason: str | None = None,
) -> ImportAuditEntry:
    final = outcome or classification.outcome
    if final not in AUDIT_OUTCOMES:
        raise ValueError(f"row {classification.row_number}: '{final}' is not a terminal outcome")
    return ImportAuditEntry(
        batch_id=batch_id,
        row_number=classification.row_number,
        outcome=str(final),
        reason=reason if reason is not None else classification.reason,
        raw_ref=classification.raw_ref,
    )


def append_entry(db: Session, entry: ImportAuditEntry) -> None:
    db.add(entry)
    db.commit()


def list_entries(db: Session, batch_id: int) -> list[ImportAuditEntry]:
    stmt = (
        select(ImportAuditEntry)
        .where(ImportAuditEntry.batch_id == batch_id)
        .order_by(ImportAuditEntry.row_number)
    )
    return list(db.execute(stmt).scalars().all())
