"""Forced liquidation of loans overdue beyond the grace period"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from quota_ledger.domain.liquidation import plan_liquidation
from quota_ledger.domain.metadata import parse_loan_terms
from quota_ledger.domain.models import (
    CashMovement,
    InstallmentSource,
    LiquidationPlan,
    LoanStatus,
    Notification,
    TransactionStatus,
    TransactionType,
)
from quota_ledger.infrastructure.database.ledger import QuotaInventory, ReserveAccount, as_collateral
from quota_ledger.infrastructure.database.models import Loan
from quota_ledger.infrastructure.database.repositories import (
    AuditLogRepository,
    InstallmentRepository,
    LoanRepository,
    TransactionRepository,
)
from quota_ledger.services.scoring import ScoreService
from quota_ledger.services.sweeps import LoanSweep, LoanSweepOutcome
from quota_ledger.utils.date_utils import utcnow


class LiquidationSweep(LoanSweep):
    """
    Consumes collateral of APPROVED loans past due by more than the grace period.

    Borrower quotas go first, oldest first, then the guarantor's. Whole quotas
    are consumed and their full value is kept in operating cash.
    """

    name = "liquidation"
    statuses = (LoanStatus.APPROVED,)

    def grace_days(self) -> int:
        return self.settings.liquidation_grace_days

    def process_loan(self, db: Session, loan_id: int, cutoff: datetime) -> LoanSweepOutcome:
        loans = LoanRepository(db)
        loan = loans.lock_in_status(loan_id, self.statuses)
        if loan is None or loan.due_date is None or loan.due_date >= cutoff:
            return LoanSweepOutcome(loan_id, "skipped")

        debt = loans.outstanding_debt_cents(loan)
        if debt <= 0:
            return LoanSweepOutcome(loan_id, "skipped")

        terms = parse_loan_terms(loan.meta)
        reserve = ReserveAccount.lock(db)
        inventory = QuotaInventory(db)
        borrower_quotas = inventory.lock_active(loan.user_id)
        guarantor_quotas = []
        if terms.guarantor_id and terms.guarantor_id != loan.user_id:
            guarantor_quotas = inventory.lock_active(terms.guarantor_id)

        plan = plan_liquidation(debt, as_collateral(borrower_quotas), as_collateral(guarantor_quotas))
        audit = AuditLogRepository(db)

        if plan.total_value_cents == 0:
            loan.status = LoanStatus.OVERDUE.value
            audit.log(
                action="LOAN_OVERDUE_NO_COLLATERAL",
                entity_type="loan",
                entity_id=loan.id,
                user_id=loan.user_id,
                old_values={"status": LoanStatus.APPROVED.value},
                new_values={"status": loan.status, "debt_cents": debt},
            )
            logging.warning("Overdue loan has no collateral", extra={"loan_id": loan.id, "debt_cents": debt})
            return LoanSweepOutcome(
                loan_id,
                "overdue",
                notifications=[
                    Notification(loan.user_id, "Loan overdue", "Your loan is overdue. Please contact support.")
                ],
            )

        consumed_ids = [q.quota_id for q in plan.borrower_quotas + plan.guarantor_quotas]
        inventory.delete(consumed_ids)
        reserve.adjust_operating_cash(plan.total_value_cents, CashMovement.LIQUIDATION_RECOVERY)

        recovered = min(plan.total_value_cents, debt)
        InstallmentRepository(db).record(
            loan.id,
            recovered,
            source=InstallmentSource.LIQUIDATION,
            description=f"Automatic liquidation of {len(consumed_ids)} quota(s)",
        )

        now = utcnow()
        loan.status = LoanStatus.PAID.value if plan.fully_covered else LoanStatus.OVERDUE.value
        loan.meta = {
            **(loan.meta or {}),
            "auto_liquidated": True,
            "liquidated_amount_cents": plan.total_value_cents,
            "liquidation_date": now.isoformat(),
            "guarantor_execution": bool(plan.guarantor_quotas),
        }

        ScoreService(db).reset(loan.user_id, f"Loan {loan.id} liquidated")
        notifications = self._record_liquidation(db, loan, terms.guarantor_id, plan, now)

        audit.log(
            action="LOAN_AUTO_LIQUIDATED",
            entity_type="loan",
            entity_id=loan.id,
            user_id=loan.user_id,
            old_values={"status": LoanStatus.APPROVED.value, "debt_cents": debt},
            new_values={
                "status": loan.status,
                "liquidated_amount_cents": plan.total_value_cents,
                "quota_ids": consumed_ids,
            },
        )
        return LoanSweepOutcome(loan_id, "liquidated", plan.total_value_cents, notifications)

    def _record_liquidation(
        self, db: Session, loan: Loan, guarantor_id: int | None, plan: LiquidationPlan, now: datetime
    ) -> List[Notification]:
        transactions = TransactionRepository(db)
        notifications = []

        if plan.guarantor_quotas:
            transactions.create(
                guarantor_id,
                TransactionType.SYSTEM_LIQUIDATION,
                -plan.guarantor_value_cents,
                f"Guarantee executed: {len(plan.guarantor_quotas)} quota(s) liquidated for loan {loan.id}",
                status=TransactionStatus.APPROVED,
                meta={"loan_id": loan.id, "borrower_id": loan.user_id, "guarantor_execution": True},
                processed_at=now,
            )
            notifications.append(
                Notification(
                    guarantor_id,
                    "Guarantee executed",
                    f"{len(plan.guarantor_quotas)} of your quota(s) covered an overdue loan you guaranteed.",
                )
            )

        transactions.create(
            loan.user_id,
            TransactionType.SYSTEM_LIQUIDATION,
            -plan.borrower_value_cents,
            f"Automatic liquidation of loan {loan.id}",
            status=TransactionStatus.APPROVED,
            meta={"loan_id": loan.id, "guarantor_execution": bool(plan.guarantor_quotas)},
            processed_at=now,
        )
        notifications.append(
            Notification(
                loan.user_id,
                "Loan liquidated",
                f"Your loan was overdue and {plan.total_value_cents} cents of collateral were liquidated.",
            )
        )
        return notifications

    def summarize(self, outcomes: List[LoanSweepOutcome], failed: List[int]) -> Dict[str, Any]:
        return {
            "liquidated_count": sum(1 for o in outcomes if o.outcome == "liquidated"),
            "overdue_count": sum(1 for o in outcomes if o.outcome == "overdue"),
            "failed_loan_ids": failed,
        }
