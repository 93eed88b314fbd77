import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from tripledger.auditor import verify_completed_batches
from tripledger.config import Settings


logger = logging.getLogger(__name__)


def _run_completeness_audit(session_factory: sessionmaker[Session]) -> None:
    with session_factory() as db:
        proofs = verify_completed_batches(db)

    failed = [proof.batch_id for proof in proofs if not proof.is_complete]
    if failed:
        logger.error(
            "scheduled completeness audit found unreconciled batches",
            extra={"checked_batches": len(proofs), "failed_batch_ids": failed},
        )
        return
    logger.info("scheduled completeness audit passed", extra={"checked_batches": len(proofs)})


def start_scheduler(settings: Settings, session_factory: sessionmaker[Session], *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_completeness_audit,
        "cron",
        args=[session_factory],
        hour=settings.audit_hour_utc,
        minute=settings.audit_minute_utc,
        id="completeness_audit",
        replace_existing=True,
    )

    logger.info(
        "scheduler started",
        extra={
            "audit_hour_utc": settings.audit_hour_utc,
            "audit_minute_utc": settings.audit_minute_utc,
        },
    )

    if run_now:
        _run_completeness_audit(session_factory)

    scheduler.start()
