"""Credit guarantee fund (FGC) write-offs for severely delinquent loans"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from quota_ledger.domain.models import InstallmentSource, LoanStatus, TransactionStatus, TransactionType
from quota_ledger.infrastructure.database.ledger import ReserveAccount
from quota_ledger.infrastructure.database.repositories import (
    AuditLogRepository,
    InstallmentRepository,
    LoanRepository,
    TransactionRepository,
)
from quota_ledger.infrastructure.observability.metrics import fgc_covered_cents_counter
from quota_ledger.services.sweeps import LoanSweep, LoanSweepOutcome
from quota_ledger.utils.date_utils import utcnow


class GuaranteeFundSweep(LoanSweep):
    """Covers remaining debt from the segregated fund; operating cash is never touched"""

    name = "fgc"
    statuses = (LoanStatus.APPROVED, LoanStatus.PAYMENT_PENDING, LoanStatus.OVERDUE)

    def grace_days(self) -> int:
        return self.settings.fgc_grace_days

    def process_loan(self, db: Session, loan_id: int, cutoff: datetime) -> LoanSweepOutcome:
        loans = LoanRepository(db)
        loan = loans.lock_in_status(loan_id, self.statuses)
        if loan is None or loan.due_date is None or loan.due_date >= cutoff:
            return LoanSweepOutcome(loan_id, "skipped")

        audit = AuditLogRepository(db)
        old_status = loan.status
        debt = loans.outstanding_debt_cents(loan)
        if debt <= 0:
            loan.status = LoanStatus.PAID.value
            audit.log(
                action="LOAN_SETTLED",
                entity_type="loan",
                entity_id=loan.id,
                user_id=loan.user_id,
                old_values={"status": old_status},
                new_values={"status": loan.status},
            )
            return LoanSweepOutcome(loan_id, "settled")

        reserve = ReserveAccount.lock(db)
        fund = reserve.guarantee_fund_cents
        if fund <= 0:
            logging.warning("Guarantee fund is empty, loan left uncovered", extra={"loan_id": loan.id, "debt_cents": debt})
            return LoanSweepOutcome(loan_id, "skipped")

        cover = min(debt, fund)
        reserve.draw_guarantee_fund(cover)
        InstallmentRepository(db).record(
            loan.id,
            cover,
            source=InstallmentSource.FGC,
            fgc_covered=True,
            description="Covered by the credit guarantee fund",
        )

        now = utcnow()
        fully_covered = cover >= debt - self.settings.repayment_tolerance_cents
        loan.status = LoanStatus.PAID.value if fully_covered else LoanStatus.OVERDUE.value
        loan.meta = {
            **(loan.meta or {}),
            "fgc_rescue": {"covered_cents": cover, "debt_cents": debt, "date": now.isoformat()},
        }

        TransactionRepository(db).create(
            loan.user_id,
            TransactionType.SYSTEM_ADJUSTMENT,
            -cover,
            f"Loan {loan.id} covered by the credit guarantee fund",
            status=TransactionStatus.APPROVED,
            meta={"loan_id": loan.id, "fgc_covered": True},
            processed_at=now,
        )
        audit.log(
            action="LOAN_FGC_COVERED",
            entity_type="loan",
            entity_id=loan.id,
            user_id=loan.user_id,
            old_values={"status": old_status, "debt_cents": debt},
            new_values={"status": loan.status, "covered_cents": cover},
        )
        fgc_covered_cents_counter.inc(cover)
        return LoanSweepOutcome(loan_id, "covered", cover)

    def summarize(self, outcomes: List[LoanSweepOutcome], failed: List[int]) -> Dict[str, Any]:
        covered = [o for o in outcomes if o.outcome == "covered"]
        return {
            "covered_count": len(covered),
            "total_value_cents": sum(o.value_cents for o in covered),
            "failed_loan_ids": failed,
        }
