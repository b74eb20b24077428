from datetime import timedelta
from decimal import Decimal
from typing import Callable, Dict, Any, Iterable
import logging
import time

from sqlalchemy import update, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import JobRun, JobStatus
from utils import utcnow, as_naive_utc, money

logger = logging.getLogger(__name__)


class JobError(Exception):
    """Base batch job exception"""
    pass

class JobAlreadyRunningError(JobError):
    pass


class JobRunner:
    """
    Runs one batch job at a time per name.

    The work function receives a fixed ``as_of`` and returns a stats dict
    (processed, errors, total_amount). The outcome is persisted on the
    job's JobRun row, errors raise an alert, money moved sends a summary.
    """

    def __init__(self, lock, notifier, stale_after_hours=25, lock_stale_seconds=3600):
        self.lock = lock
        self.notifier = notifier
        self.stale_after = timedelta(hours=stale_after_hours)
        self.lock_stale = timedelta(seconds=lock_stale_seconds)

    def run(self, job: str, fn: Callable[[Any], Dict[str, Any]], as_of=None,
            enabled: bool = True, fail_if_running: bool = False) -> Dict[str, Any]:
        """Run ``fn(as_of)`` once. A concurrent run is skipped, or raises JobAlreadyRunningError with ``fail_if_running``."""
        as_of = as_naive_utc(as_of) or utcnow()

        if not enabled:
            logger.info(f"Job {job} disabled by operation flags, skipping run for {as_of.isoformat()}")
            self._record_skip(job, as_of, "disabled by operation flags")
            return self._result(job, as_of, JobStatus.SKIPPED, reason="disabled")

        token = self.lock.acquire(job)
        if token is None:
            return self._already_running(job, as_of, fail_if_running)

        try:
            if not self._claim(job, as_of):
                return self._already_running(job, as_of, fail_if_running)

            started = time.monotonic()
            try:
                stats = fn(as_of) or {}
            except Exception as e:
                db.session.rollback()
                duration_ms = int((time.monotonic() - started) * 1000)
                logger.exception(f"Job {job} crashed after {duration_ms}ms")
                self._finish(job, JobStatus.ERROR, 0, 1, Decimal("0.00"), duration_ms, str(e))
                self.notifier.job_crashed(job, e)
                return self._result(job, as_of, JobStatus.ERROR, errors=1, duration_ms=duration_ms,
                                    error_samples=[str(e)])

            duration_ms = int((time.monotonic() - started) * 1000)
            errors = list(stats.get("errors", []))
            result = self._result(
                job, as_of, JobStatus.SUCCESS,
                processed=stats.get("processed", 0),
                errors=len(errors),
                total_amount=money(stats.get("total_amount", 0)),
                duration_ms=duration_ms,
                error_samples=[str(e) for e in errors[:10]],
                stats=stats,
            )
            self._finish(job, JobStatus.SUCCESS, result["processed"], result["errors"],
                         result["total_amount"], duration_ms,
                         "; ".join(result["error_samples"]) or None)

            logger.info(
                f"Job {job} done in {duration_ms}ms: processed {result['processed']}, "
                f"errors {result['errors']}, amount {result['total_amount']}"
            )
            if result["errors"] > 0:
                self.notifier.job_errors(job, result)
            if result["total_amount"] > 0:
                self.notifier.job_summary(job, result)
            return result
        finally:
            self.lock.release(job, token)

    def _already_running(self, job, as_of, fail):
        if fail:
            raise JobAlreadyRunningError(f"Job {job} is already running")
        logger.warning(f"Job {job} already running in this process or another worker, skipping")
        return self._result(job, as_of, JobStatus.SKIPPED, reason="already_running")

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    def health(self, jobs: Iterable[str], now=None) -> Dict[str, Any]:
        now = as_naive_utc(now) or utcnow()
        jobs = list(jobs)
        rows = {r.job: r for r in JobRun.query.filter(JobRun.job.in_(jobs)).all()}
        report = {}
        for job in jobs:
            row = rows.get(job)
            if row is None or row.last_run is None:
                report[job] = {"healthy": False, "reason": "never_run"}
                continue

            entry = row.to_dict()
            entry["healthy"] = True
            age = now - row.last_run
            entry["ageHours"] = round(age.total_seconds() / 3600, 2)
            if age > self.stale_after:
                entry["healthy"] = False
                entry["reason"] = f"no run for {entry['ageHours']}h"
            elif row.status == JobStatus.RUNNING and row.started_at and now - row.started_at > self.lock_stale:
                entry["healthy"] = False
                entry["reason"] = "stuck in running state"
            report[job] = entry

        return {
            "healthy": all(entry["healthy"] for entry in report.values()),
            "checkedAt": now.isoformat(),
            "jobs": report,
        }

    # ------------------------------------------------------------------
    # JobRun persistence
    # ------------------------------------------------------------------
    def _claim(self, job, as_of) -> bool:
        now = utcnow()
        self._ensure_row(job)
        result = db.session.execute(
            update(JobRun)
            .where(JobRun.job == job,
                   or_(JobRun.status != JobStatus.RUNNING,
                       JobRun.started_at.is_(None),
                       JobRun.started_at < now - self.lock_stale))
            .values(status=JobStatus.RUNNING, started_at=now, as_of=as_of, error_message=None)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1

    def _ensure_row(self, job):
        if JobRun.query.filter_by(job=job).first() is not None:
            return
        try:
            with db.session.begin_nested():
                db.session.add(JobRun(job=job, status=JobStatus.SUCCESS))
                db.session.flush()
        except IntegrityError:
            logger.debug(f"JobRun row for {job} created concurrently")
        db.session.commit()

    def _finish(self, job, status, processed, errors, total_amount, duration_ms, error_message):
        now = utcnow()
        values = dict(
            status=status,
            last_run=now,
            processed=processed,
            errors=errors,
            total_amount=total_amount,
            duration_ms=duration_ms,
            error_message=error_message,
        )
        if status == JobStatus.SUCCESS:
            values["last_success"] = now
        try:
            db.session.execute(
                update(JobRun).where(JobRun.job == job).values(**values)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Could not persist state for job {job}: {e}")
            raise

    def _record_skip(self, job, as_of, reason):
        self._ensure_row(job)
        db.session.execute(
            update(JobRun)
            .where(JobRun.job == job, JobRun.status != JobStatus.RUNNING)
            .values(status=JobStatus.SKIPPED, last_run=utcnow(), as_of=as_of,
                    processed=0, errors=0, total_amount=Decimal("0.00"), duration_ms=0,
                    error_message=reason)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

    @staticmethod
    def _result(job, as_of, status, reason=None, processed=0, errors=0,
                total_amount=Decimal("0.00"), duration_ms=0, error_samples=None, stats=None):
        return {
            "job": job,
            "as_of": as_of,
            "status": status.value,
            "reason": reason,
            "processed": processed,
            "errors": errors,
            "total_amount": total_amount,
            "duration_ms": duration_ms,
            "error_samples": error_samples or [],
            "stats": stats or {},
        }
