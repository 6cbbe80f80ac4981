"""Data access layer for transactions, loans, installments and the audit trail"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from quota_ledger.domain.exceptions import AlreadyProcessedError
from quota_ledger.domain.models import (
    ACTIONABLE_TRANSACTION_STATUSES,
    ACTIVE_DEBT_STATUSES,
    InstallmentSource,
    LoanStatus,
    PayoutStatus,
    TransactionStatus,
    TransactionType,
)
from quota_ledger.infrastructure.database.models import AuditLog, Loan, LoanInstallment, Transaction

# Approved transaction types counted as platform spend by the credit engine
PLATFORM_SPEND_TYPES = (TransactionType.MEMBERSHIP_UPGRADE.value, TransactionType.MARKET_BOOST.value)


class TransactionRepository:
    """Repository for ledger transactions"""

    def __init__(self, db: Session):
        self.db = db

    def lock_actionable(self, transaction_id: int) -> Transaction:
        """
        Lock a transaction that is still awaiting a decision.

        Raises:
            AlreadyProcessedError: Missing or already APPROVED / REJECTED
        """
        tx = (
            self.db.query(Transaction)
            .filter(
                Transaction.id == transaction_id,
                Transaction.status.in_([s.value for s in ACTIONABLE_TRANSACTION_STATUSES]),
            )
            .with_for_update()
            .first()
        )
        if tx is None:
            raise AlreadyProcessedError(f"Transaction {transaction_id} not found or already processed")
        return tx

    def create(
        self,
        user_id: int,
        tx_type: TransactionType,
        amount_cents: int,
        description: str,
        status: TransactionStatus = TransactionStatus.APPROVED,
        meta: Optional[Dict[str, Any]] = None,
        processed_at: Optional[datetime] = None,
    ) -> Transaction:
        """Persist an engine-generated transaction"""
        tx = Transaction(
            user_id=user_id,
            type=tx_type.value,
            amount_cents=amount_cents,
            description=description,
            status=status.value,
            payout_status=PayoutStatus.NONE.value,
            gateway_cost_cents=0,
            meta=meta or {},
            processed_at=processed_at,
        )
        self.db.add(tx)
        self.db.flush()  # Get ID without committing
        return tx

    def pending_referral_bonus_ids(self, limit: int = 100) -> List[int]:
        """Oldest deferred referral bonuses first"""
        rows = (
            self.db.query(Transaction.id)
            .filter(
                Transaction.type == TransactionType.REFERRAL_BONUS.value,
                Transaction.status == TransactionStatus.PENDING.value,
            )
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
            .limit(limit)
            .all()
        )
        return [row.id for row in rows]

    def platform_spent_cents(self, user_id: int) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(func.abs(Transaction.amount_cents)), 0))
            .filter(
                Transaction.user_id == user_id,
                Transaction.type.in_(PLATFORM_SPEND_TYPES),
                Transaction.status == TransactionStatus.APPROVED.value,
            )
            .scalar()
        )
        return int(total)


class LoanRepository:
    """Repository for loans"""

    def __init__(self, db: Session):
        self.db = db

    def lock_in_status(self, loan_id: int, statuses: Sequence[LoanStatus]) -> Optional[Loan]:
        """Lock a loan only if it is still in one of the given statuses"""
        return (
            self.db.query(Loan)
            .filter(Loan.id == loan_id, Loan.status.in_([s.value for s in statuses]))
            .with_for_update()
            .first()
        )

    def lock_pending(self, loan_id: int) -> Loan:
        loan = self.lock_in_status(loan_id, (LoanStatus.PENDING,))
        if loan is None:
            raise AlreadyProcessedError(f"Loan {loan_id} not found or already processed")
        return loan

    def lock(self, loan_id: int) -> Optional[Loan]:
        return self.db.query(Loan).filter(Loan.id == loan_id).with_for_update().first()

    def paid_to_date_cents(self, loan_id: int) -> int:
        self.db.flush()
        total = (
            self.db.query(func.coalesce(func.sum(LoanInstallment.amount_cents), 0))
            .filter(LoanInstallment.loan_id == loan_id)
            .scalar()
        )
        return int(total)

    def outstanding_debt_cents(self, loan: Loan) -> int:
        return loan.contracted_repayment_cents - self.paid_to_date_cents(loan.id)

    def other_active_principal_cents(self, user_id: int, exclude_loan_id: int) -> int:
        """Principal still owed on the borrower's other running loans"""
        total = (
            self.db.query(func.coalesce(func.sum(Loan.amount_cents), 0))
            .filter(
                Loan.user_id == user_id,
                Loan.id != exclude_loan_id,
                Loan.status.in_([s.value for s in ACTIVE_DEBT_STATUSES]),
            )
            .scalar()
        )
        return int(total)

    def ids_due_before(self, statuses: Sequence[LoanStatus], cutoff: datetime) -> List[int]:
        """Candidate loan ids for a sweep, read without locks"""
        rows = (
            self.db.query(Loan.id)
            .filter(
                Loan.status.in_([s.value for s in statuses]),
                Loan.due_date.isnot(None),
                Loan.due_date < cutoff,
            )
            .order_by(Loan.due_date.asc(), Loan.id.asc())
            .all()
        )
        return [row.id for row in rows]


class InstallmentRepository:
    """Repository for loan installments (append-only)"""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        loan_id: int,
        amount_cents: int,
        source: InstallmentSource = InstallmentSource.PAYMENT,
        use_balance: bool = False,
        fgc_covered: bool = False,
        description: Optional[str] = None,
    ) -> LoanInstallment:
        installment = LoanInstallment(
            loan_id=loan_id,
            amount_cents=amount_cents,
            source=source.value,
            use_balance=use_balance,
            fgc_covered=fgc_covered,
            description=description,
        )
        self.db.add(installment)
        self.db.flush()
        return installment


class AuditLogRepository:
    """Append-only audit trail"""

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        action: str,
        entity_type: str,
        entity_id: Any,
        user_id: Optional[int] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        entry = AuditLog(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            old_values=old_values,
            new_values=new_values,
        )
        self.db.add(entry)
        return entry
