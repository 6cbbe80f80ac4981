"""Shared driver for batch jobs that process overdue loans one scope at a time"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from quota_ledger.config import Settings, settings as default_settings
from quota_ledger.domain.models import LoanStatus, Notification
from quota_ledger.infrastructure.clients.notifications import NotificationClient, dispatch_after_commit
from quota_ledger.infrastructure.database.repositories import LoanRepository
from quota_ledger.infrastructure.database.scope import ScopeResult, TransactionScope
from quota_ledger.infrastructure.observability.logging import log_sweep
from quota_ledger.infrastructure.observability.metrics import record_sweep_outcome
from quota_ledger.utils.date_utils import overdue_cutoff, utcnow


@dataclass
class LoanSweepOutcome:
    """What a sweep did to one loan inside its own scope"""

    loan_id: int
    outcome: str  # liquidated | overdue | covered | settled | skipped
    value_cents: int = 0
    notifications: List[Notification] = field(default_factory=list)


class LoanSweep:
    """
    Base for sweeps over loans past a grace period.

    Candidates are read once without locks; each loan is then re-locked and
    re-checked in its own scope so one failure never rolls back the others.
    """

    name = "sweep"
    statuses: Sequence[LoanStatus] = ()

    def __init__(
        self,
        scope: TransactionScope | None = None,
        notifier: NotificationClient | None = None,
        config: Settings | None = None,
    ):
        self.scope = scope or TransactionScope()
        self.notifier = notifier or NotificationClient()
        self.settings = config or default_settings

    def grace_days(self) -> int:
        raise NotImplementedError

    def process_loan(self, db: Session, loan_id: int, cutoff: datetime) -> LoanSweepOutcome:
        raise NotImplementedError

    def summarize(self, outcomes: List[LoanSweepOutcome], failed: List[int]) -> Dict[str, Any]:
        raise NotImplementedError

    def run(self, now: Optional[datetime] = None) -> ScopeResult:
        start = time.time()
        cutoff = overdue_cutoff(self.grace_days(), now or utcnow())

        candidates = self.scope.run(
            lambda db: LoanRepository(db).ids_due_before(self.statuses, cutoff),
            name=f"{self.name}_candidates",
        )
        if not candidates.success:
            return candidates

        outcomes: List[LoanSweepOutcome] = []
        failed: List[int] = []
        for loan_id in candidates.data:
            result = self.scope.run(
                lambda db, loan_id=loan_id: self.process_loan(db, loan_id, cutoff),
                name=f"{self.name}_loan",
            )
            if not result.success:
                failed.append(loan_id)
                record_sweep_outcome(self.name, "failed")
                continue

            outcome: LoanSweepOutcome = result.data
            outcomes.append(outcome)
            record_sweep_outcome(self.name, outcome.outcome)
            dispatch_after_commit(self.notifier, outcome.notifications)

        summary = self.summarize(outcomes, failed)
        log_sweep(
            self.name,
            processed=len(outcomes),
            failed=len(failed),
            duration_ms=(time.time() - start) * 1000,
            **summary,
        )
        if failed:
            logging.warning(f"{self.name} sweep left loans unprocessed", extra={"failed_loan_ids": failed})
        return ScopeResult(success=True, data=summary)
