"""Loan approval and rejection"""

import logging

from sqlalchemy.orm import Session

from quota_ledger.config import Settings, settings as default_settings
from quota_ledger.domain.exceptions import (
    CreditLimitExceededError,
    EntityNotFoundError,
    InsufficientLiquidityError,
)
from quota_ledger.domain.fees import calculate_origination_fee
from quota_ledger.domain.metadata import parse_loan_terms
from quota_ledger.domain.models import (
    ApprovalAction,
    ApprovalOutcome,
    CashMovement,
    LoanStatus,
    Notification,
    TransactionStatus,
    TransactionType,
)
from quota_ledger.infrastructure.database.ledger import BalanceLedger, ReserveAccount
from quota_ledger.infrastructure.database.models import Loan, User
from quota_ledger.infrastructure.database.repositories import (
    AuditLogRepository,
    LoanRepository,
    TransactionRepository,
)
from quota_ledger.services.credit import current_credit_limit
from quota_ledger.utils.date_utils import add_months, utcnow


class LoanLifecycleManager:
    """Moves a PENDING loan to APPROVED (paid out) or REJECTED"""

    def __init__(self, db: Session, config: Settings | None = None):
        self.db = db
        self.settings = config or default_settings
        self.loans = LoanRepository(db)
        self.transactions = TransactionRepository(db)
        self.audit = AuditLogRepository(db)
        self.balances = BalanceLedger(db)

    def approve(self, loan_id: int, action: ApprovalAction | str) -> ApprovalOutcome:
        """
        Decide on a pending loan.

        Approval re-validates the borrower's credit limit against other running
        debt and refuses to lend money the club does not hold net of reserves.

        Raises:
            AlreadyProcessedError: Loan missing or no longer PENDING
            CreditLimitExceededError: Amount above the borrower's available credit
            InsufficientLiquidityError: Net payout above available operating cash
        """
        action = ApprovalAction(action)
        loan = self.loans.lock_pending(loan_id)

        if action == ApprovalAction.REJECT:
            return self._reject(loan)
        return self._approve(loan)

    def _reject(self, loan: Loan) -> ApprovalOutcome:
        loan.status = LoanStatus.REJECTED.value
        self.audit.log(
            action="LOAN_REJECTED",
            entity_type="loan",
            entity_id=loan.id,
            user_id=loan.user_id,
            old_values={"status": LoanStatus.PENDING.value},
            new_values={"status": loan.status},
        )
        return ApprovalOutcome(
            entity_id=loan.id,
            status=loan.status,
            entity_type="loan",
            notifications=[Notification(loan.user_id, "Loan rejected", "Your loan request was not approved.")],
        )

    def _approve(self, loan: Loan) -> ApprovalOutcome:
        terms = parse_loan_terms(loan.meta)
        borrower = self.db.get(User, loan.user_id)
        if borrower is None:
            raise EntityNotFoundError(f"Borrower {loan.user_id} of loan {loan.id} not found")

        credit_limit = current_credit_limit(self.db, borrower)
        other_debt = self.loans.other_active_principal_cents(loan.user_id, loan.id)
        real_available = credit_limit - other_debt
        if loan.amount_cents > real_available:
            raise CreditLimitExceededError(
                f"Loan {loan.id} requests {loan.amount_cents} cents, available credit is {max(real_available, 0)}"
            )

        fee, net = calculate_origination_fee(loan.amount_cents, self.settings.loan_origination_fee_rate)

        reserve = ReserveAccount.lock(self.db)
        if net > reserve.available_liquidity:
            raise InsufficientLiquidityError(
                f"Loan {loan.id} payout of {net} cents exceeds available liquidity of {reserve.available_liquidity}"
            )

        gfc_fee = min(terms.gfc_fee_cents, fee)
        reserve.adjust_operating_cash(-net, CashMovement.LOAN_PAYOUT)
        reserve.credit_guarantee_fund(gfc_fee)
        reserve.split_fee(fee - gfc_fee)
        self.balances.credit(loan.user_id, net)

        now = utcnow()
        loan.status = LoanStatus.APPROVED.value
        loan.approved_at = now
        if loan.due_date is None:
            months = max(loan.installments_plan or 1, 1)
            loan.due_date = add_months(now, months, self.settings.installment_interval_days)
        loan.meta = {
            **(loan.meta or {}),
            "origination_fee_cents": fee,
            "net_amount_cents": net,
            "gfc_fee_cents": gfc_fee,
            "credit_limit_cents": credit_limit,
        }

        self.transactions.create(
            loan.user_id,
            TransactionType.LOAN_APPROVED,
            net,
            f"Loan {loan.id} approved: {loan.amount_cents} cents less {fee} cents origination fee",
            status=TransactionStatus.APPROVED,
            meta={"loan_id": loan.id, "origination_fee_cents": fee, "gfc_fee_cents": gfc_fee},
            processed_at=now,
        )
        self.audit.log(
            action="LOAN_APPROVED",
            entity_type="loan",
            entity_id=loan.id,
            user_id=loan.user_id,
            old_values={"status": LoanStatus.PENDING.value},
            new_values={"status": loan.status, "net_amount_cents": net, "origination_fee_cents": fee},
        )
        logging.info(
            "Loan paid out",
            extra={"loan_id": loan.id, "user_id": loan.user_id, "net_amount_cents": net, "origination_fee_cents": fee},
        )

        return ApprovalOutcome(
            entity_id=loan.id,
            status=loan.status,
            entity_type="loan",
            notifications=[
                Notification(loan.user_id, "Loan approved", f"{net} cents were credited to your balance.")
            ],
        )
