"""
Daily loan maintenance: overdue status correction and due-date reminders.

The two passes are plain functions over a session factory so they can be
called directly (tests, CLI, admin endpoint). ``ReminderScheduler`` puts
them on an APScheduler cron trigger and makes sure runs never overlap.
Each loan and each borrower group is handled in its own transaction; one
failure is logged and counted, then the run moves on.
"""

import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.exc import SQLAlchemyError

from . import ledger
from .db import session_scope
from .errors import InfrastructureError
from .models import utcnow
from .notifications import NotificationResult

logger = logging.getLogger(__name__)

JOB_ID = "daily-loan-jobs"
DEFAULT_REMINDER_DAYS = 7


@dataclass
class RunSummary:
    overdue_marked: int = 0
    total: int = 0
    sent: int = 0
    failed: int = 0
    failures: List[dict] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


def update_loan_statuses(session_factory, now=None, failures=None):
    """
    Pass 1: flag open loans past their due date as overdue.

    A loan that cannot be updated is logged and, when ``failures`` is given,
    recorded there as ``{"loan_id", "error"}``.
    """
    now = now or utcnow()
    with session_scope(session_factory) as session:
        loan_ids = ledger.stale_overdue_ids(session, now)

    if not loan_ids:
        logger.info("No loans to mark as overdue")
        return 0

    marked = 0
    for loan_id in loan_ids:
        try:
            with session_scope(session_factory) as session:
                if ledger.mark_overdue(session, loan_id, now):
                    marked += 1
        except (InfrastructureError, SQLAlchemyError) as e:
            logger.error("Could not mark loan %s overdue: %s", loan_id, e)
            if failures is not None:
                failures.append({"loan_id": loan_id, "error": str(e)})

    logger.info("Marked %s loans as overdue", marked)
    return marked


def _group_by_borrower(loans):
    groups = {}
    for loan in loans:
        groups.setdefault(loan.user_id, []).append(loan)
    return groups


def _notify(notifier, borrower, loans, now):
    try:
        if len(loans) == 1:
            loan = loans[0]
            return notifier.send_single_reminder(loan, borrower, loan.book, now=now)
        return notifier.send_batch_reminder(borrower, loans)
    except Exception as e:
        logger.exception("Notifier raised for user %s", borrower.id)
        return NotificationResult(False, str(e))


def send_loan_reminders(
    session_factory, notifier, lead_days=DEFAULT_REMINDER_DAYS, now=None, summary=None
):
    """
    Pass 2: remind borrowers of loans due within ``lead_days`` (or overdue).

    Loans are grouped per borrower: one loan gets a single reminder, several
    get one batched message. reminder_sent is set only after the notifier
    reports success, so failed groups are retried on the next run.
    """
    now = now or utcnow()
    summary = summary if summary is not None else RunSummary()

    with session_factory() as session:
        loans = ledger.reminder_candidates(session, now, lead_days)

    summary.total += len(loans)
    if not loans:
        logger.info("No loans require reminders")
        return summary
    logger.info("Found %s loans requiring reminders", len(loans))

    for user_id, group in _group_by_borrower(loans).items():
        borrower = group[0].borrower
        loan_ids = [loan.id for loan in group]

        result = _notify(notifier, borrower, group, now)
        if not result.success:
            summary.failed += len(group)
            summary.failures.append(
                {"user_id": user_id, "loan_ids": loan_ids, "error": result.error}
            )
            logger.warning(
                "Failed to send reminder to %s for loans %s: %s",
                borrower.email,
                loan_ids,
                result.error,
            )
            continue

        try:
            with session_scope(session_factory) as session:
                ledger.mark_reminders_sent(session, loan_ids)
        except (InfrastructureError, SQLAlchemyError) as e:
            summary.failed += len(group)
            summary.failures.append(
                {"user_id": user_id, "loan_ids": loan_ids, "error": str(e)}
            )
            logger.error("Reminder sent to %s but flag not saved: %s", borrower.email, e)
            continue

        summary.sent += len(group)
        logger.info("Reminder sent to %s for %s loan(s)", borrower.email, len(group))

    logger.info(
        "Loan reminders job completed: %s sent, %s failed", summary.sent, summary.failed
    )
    return summary


def run_daily_jobs(session_factory, notifier, lead_days=DEFAULT_REMINDER_DAYS, now=None):
    """Status correction first, then reminders. Always returns a summary."""
    now = now or utcnow()
    summary = RunSummary()

    try:
        summary.overdue_marked = update_loan_statuses(
            session_factory, now, failures=summary.failures
        )
    except (InfrastructureError, SQLAlchemyError) as e:
        logger.error("Overdue status pass failed: %s", e)
        summary.failures.append({"pass": "statuses", "error": str(e)})

    try:
        send_loan_reminders(session_factory, notifier, lead_days, now, summary=summary)
    except (InfrastructureError, SQLAlchemyError) as e:
        logger.error("Reminder pass failed: %s", e)
        summary.failures.append({"pass": "reminders", "error": str(e)})

    return summary


class ReminderScheduler:
    def __init__(
        self,
        session_factory,
        notifier,
        lead_days=DEFAULT_REMINDER_DAYS,
        cron_schedule="0 9 * * *",
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.lead_days = lead_days
        self.cron_schedule = cron_schedule
        self._lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def in_progress(self):
        return self._lock.locked()

    def run_now(self, now=None) -> Optional[RunSummary]:
        """Run both passes unless a run is already going; then return None."""
        if not self._lock.acquire(blocking=False):
            logger.warning("Daily loan jobs already running, skipping this trigger")
            return None
        try:
            logger.info("Running daily loan jobs")
            return run_daily_jobs(
                self.session_factory, self.notifier, self.lead_days, now
            )
        finally:
            self._lock.release()

    def start(self):
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self.run_now,
            CronTrigger.from_crontab(self.cron_schedule),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Reminder scheduler started (%s), next run %s",
            self.cron_schedule,
            self.next_run_time(),
        )

    def shutdown(self, wait=False):
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Reminder scheduler stopped")

    def next_run_time(self):
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None
