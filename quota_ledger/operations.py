"""
Collaborator-facing ledger operations.

Every operation opens its own TransactionScope, returns an OperationResult
envelope and never raises. Notifications go out only after the scope commits.
"""

import logging
import time
from functools import lru_cache
from typing import Any, Callable

from sqlalchemy.orm import Session, sessionmaker

from quota_ledger.config import Settings, settings as default_settings
from quota_ledger.domain.exceptions import ErrorKind
from quota_ledger.domain.models import ApprovalAction, ApprovalOutcome
from quota_ledger.infrastructure.clients.notifications import NotificationClient, dispatch_after_commit
from quota_ledger.infrastructure.database.ledger import BalanceLedger, ReserveAccount
from quota_ledger.infrastructure.database.repositories import TransactionRepository
from quota_ledger.infrastructure.database.scope import ScopeResult, TransactionScope
from quota_ledger.infrastructure.observability.logging import log_approval, log_sweep
from quota_ledger.infrastructure.observability.metrics import (
    operation_duration_histogram,
    real_liquidity_gauge,
    record_approval,
    record_sweep_outcome,
)
from quota_ledger.services.approvals import TransactionApprovalStateMachine
from quota_ledger.services.guarantee_fund import GuaranteeFundSweep
from quota_ledger.services.liquidation import LiquidationSweep
from quota_ledger.services.loans import LoanLifecycleManager

OperationResult = ScopeResult


def _invalid_action(action: Any) -> OperationResult:
    return OperationResult(
        success=False,
        error=f"Unknown action {action!r}, expected APPROVE or REJECT",
        error_kind=ErrorKind.PRECONDITION,
    )


class LedgerOperations:
    """Entry points for the admin API and the batch jobs"""

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        notifier: NotificationClient | None = None,
        config: Settings | None = None,
    ):
        self.scope = TransactionScope(session_factory)
        self.notifier = notifier or NotificationClient()
        self.settings = config or default_settings

    def approve_or_reject_transaction(self, transaction_id: int, action: ApprovalAction | str) -> OperationResult:
        """Decide on a pending transaction. Data: {"status"}"""
        try:
            action = ApprovalAction(action)
        except ValueError:
            return _invalid_action(action)

        return self._decide(
            "transaction",
            action,
            lambda db: TransactionApprovalStateMachine(db, self.settings).approve(transaction_id, action),
        )

    def approve_or_reject_loan(self, loan_id: int, action: ApprovalAction | str) -> OperationResult:
        """Decide on a pending loan. Data: {"status"}"""
        try:
            action = ApprovalAction(action)
        except ValueError:
            return _invalid_action(action)

        return self._decide(
            "loan",
            action,
            lambda db: LoanLifecycleManager(db, self.settings).approve(loan_id, action),
        )

    def _decide(
        self, entity: str, action: ApprovalAction, work: Callable[[Session], ApprovalOutcome]
    ) -> OperationResult:
        start = time.time()
        result = self.scope.run(work, name=f"{entity}_approval")
        duration = time.time() - start
        operation_duration_histogram.labels(operation=f"{entity}_approval", success=str(result.success)).observe(duration)

        if not result.success:
            return result

        outcome: ApprovalOutcome = result.data
        record_approval(entity, outcome.entity_type, outcome.status)
        log_approval(entity, outcome.entity_id, outcome.entity_type, action.value, outcome.status, duration * 1000)
        dispatch_after_commit(self.notifier, outcome.notifications)
        return OperationResult(success=True, data={"status": outcome.status})

    def run_liquidation_sweep(self) -> OperationResult:
        """Liquidate collateral of overdue loans. Data: {"liquidated_count", ...}"""
        return self._timed("liquidation_sweep", LiquidationSweep(self.scope, self.notifier, self.settings).run)

    def run_fgc_sweep(self) -> OperationResult:
        """Cover severely delinquent loans from the guarantee fund. Data: {"covered_count", "total_value_cents", ...}"""
        return self._timed("fgc_sweep", GuaranteeFundSweep(self.scope, self.notifier, self.settings).run)

    def release_pending_referral_bonuses(self) -> OperationResult:
        """
        Pay deferred referral bonuses, oldest first, while the profit pool covers them.

        Each bonus is approved in its own scope through the REFERRAL_BONUS
        handler; the run stops at the first bonus the pool cannot fund.
        """
        start = time.time()
        pending = self.scope.run(
            lambda db: TransactionRepository(db).pending_referral_bonus_ids(),
            name="referral_candidates",
        )
        if not pending.success:
            return pending

        paid = 0
        failed = 0
        for transaction_id in pending.data:
            result = self.scope.run(
                lambda db, transaction_id=transaction_id: TransactionApprovalStateMachine(db, self.settings).approve(
                    transaction_id, ApprovalAction.APPROVE
                ),
                name="referral_release",
            )
            if result.success:
                paid += 1
                dispatch_after_commit(self.notifier, result.data.notifications)
                continue
            if result.error_kind == ErrorKind.INSUFFICIENT_RESOURCE:
                break
            failed += 1

        record_sweep_outcome("referrals", "paid", paid)
        record_sweep_outcome("referrals", "failed", failed)
        summary = {"paid_count": paid, "remaining_count": len(pending.data) - paid}
        log_sweep("referrals", processed=paid, failed=failed, duration_ms=(time.time() - start) * 1000, **summary)
        return OperationResult(success=True, data=summary)

    def liquidity_snapshot(self) -> OperationResult:
        """Reserve buckets plus available and real liquidity, all in cents"""

        def work(db: Session) -> dict:
            reserve = ReserveAccount.lock(db)
            user_balances = BalanceLedger(db).total_balances()
            fixed_costs = self.settings.monthly_fixed_costs_cents
            real = reserve.real_liquidity(user_balances, fixed_costs)
            real_liquidity_gauge.set(real)
            return {
                **reserve.snapshot(),
                "available_liquidity_cents": reserve.available_liquidity,
                "user_balances_cents": user_balances,
                "monthly_fixed_costs_cents": fixed_costs,
                "real_liquidity_cents": real,
            }

        return self.scope.run(work, name="liquidity_snapshot")

    def _timed(self, operation: str, run: Callable[[], OperationResult]) -> OperationResult:
        start = time.time()
        result = run()
        operation_duration_histogram.labels(operation=operation, success=str(result.success)).observe(
            time.time() - start
        )
        if not result.success:
            logging.error(f"{operation} did not run: {result.error}", extra={"error_kind": result.error_kind.value})
        return result


@lru_cache
def get_operations() -> LedgerOperations:
    """Process-wide operations bound to the configured database"""
    return LedgerOperations()


def approve_or_reject_transaction(transaction_id: int, action: ApprovalAction | str) -> OperationResult:
    return get_operations().approve_or_reject_transaction(transaction_id, action)


def approve_or_reject_loan(loan_id: int, action: ApprovalAction | str) -> OperationResult:
    return get_operations().approve_or_reject_loan(loan_id, action)


def run_liquidation_sweep() -> OperationResult:
    return get_operations().run_liquidation_sweep()


def run_fgc_sweep() -> OperationResult:
    return get_operations().run_fgc_sweep()


def release_pending_referral_bonuses() -> OperationResult:
    return get_operations().release_pending_referral_bonuses()


def liquidity_snapshot() -> OperationResult:
    return get_operations().liquidity_snapshot()
