"""Row-locked primitives for user balances, the reserve singleton and quota inventory"""

import logging
from typing import Any, Dict, List, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from quota_ledger.domain.exceptions import (
    EntityNotFoundError,
    InsufficientFundsError,
    InsufficientProfitPoolError,
)
from quota_ledger.domain.fees import PLATFORM_FEE_SHARES, split_fee
from quota_ledger.domain.models import CashMovement, CollateralQuota, FeeShares, FeeSplit, QuotaStatus
from quota_ledger.infrastructure.database.models import Quota, ReserveAccountRow, User

RESERVE_ACCOUNT_ID = 1


class BalanceLedger:
    """User wallet balances; non-negativity is enforced at write time"""

    def __init__(self, db: Session):
        self.db = db

    def lock(self, user_id: int) -> User:
        """SELECT ... FOR UPDATE on the user row"""
        user = self.db.query(User).filter(User.id == user_id).with_for_update().first()
        if user is None:
            raise EntityNotFoundError(f"User {user_id} not found")
        return user

    def credit(self, user_id: int, amount_cents: int) -> None:
        if amount_cents < 0:
            raise ValueError("Credit amount must be non-negative")
        if amount_cents == 0:
            return

        self.db.flush()
        rows = (
            self.db.query(User)
            .filter(User.id == user_id)
            .update({User.balance_cents: User.balance_cents + amount_cents}, synchronize_session="fetch")
        )
        if rows == 0:
            raise EntityNotFoundError(f"User {user_id} not found")

    def debit(self, user_id: int, amount_cents: int) -> None:
        """
        Conditional decrement: UPDATE ... WHERE balance_cents >= amount.

        Raises:
            InsufficientFundsError: No row matched, the balance is too low
        """
        if amount_cents < 0:
            raise ValueError("Debit amount must be non-negative")
        if amount_cents == 0:
            return

        self.db.flush()
        rows = (
            self.db.query(User)
            .filter(User.id == user_id, User.balance_cents >= amount_cents)
            .update({User.balance_cents: User.balance_cents - amount_cents}, synchronize_session="fetch")
        )
        if rows == 0:
            if self.db.query(User.id).filter(User.id == user_id).first() is None:
                raise EntityNotFoundError(f"User {user_id} not found")
            raise InsufficientFundsError(f"User {user_id} balance is below {amount_cents} cents")

    def total_balances(self) -> int:
        """Sum of every member wallet, a liability of the club"""
        self.db.flush()
        return int(self.db.query(func.coalesce(func.sum(User.balance_cents), 0)).scalar())


class ReserveAccount:
    """
    Handle over the locked reserve singleton.

    Obtain it with ReserveAccount.lock(session); it is only valid inside the
    scope that locked it. Operating cash changes only via adjust_operating_cash.
    """

    def __init__(self, db: Session, row: ReserveAccountRow):
        self.db = db
        self.row = row

    @classmethod
    def lock(cls, db: Session) -> "ReserveAccount":
        row = (
            db.query(ReserveAccountRow)
            .filter(ReserveAccountRow.id == RESERVE_ACCOUNT_ID)
            .with_for_update()
            .first()
        )
        if row is None:
            raise EntityNotFoundError("Reserve account is not initialized")
        return cls(db, row)

    def split_fee(self, amount_cents: int, shares: FeeShares = PLATFORM_FEE_SHARES) -> FeeSplit:
        """Credit a retained fee to the tax, operational, owner and investment buckets"""
        split = split_fee(amount_cents, shares)
        self.row.tax_reserve_cents += split.tax_cents
        self.row.operational_reserve_cents += split.operational_cents
        self.row.owner_profit_cents += split.owner_cents
        self.row.investment_reserve_cents += split.investment_cents
        return split

    def adjust_operating_cash(self, delta_cents: int, reason: CashMovement) -> None:
        self.row.operating_cash_cents += delta_cents
        logging.debug(
            "Operating cash adjusted",
            extra={"delta_cents": delta_cents, "reason": reason.value, "operating_cash_cents": self.row.operating_cash_cents},
        )

    def record_gateway_cost(self, cost_cents: int) -> None:
        """Accumulate a gateway cost without touching operating cash"""
        self.row.total_gateway_costs_cents += cost_cents

    def absorb_gateway_cost(self, cost_cents: int) -> None:
        """Record a gateway cost and pay it out of operating cash"""
        if cost_cents <= 0:
            return
        self.record_gateway_cost(cost_cents)
        self.adjust_operating_cash(-cost_cents, CashMovement.GATEWAY_COST)

    def credit_profit_pool(self, amount_cents: int) -> None:
        self.row.profit_pool_cents += amount_cents

    def debit_profit_pool(self, amount_cents: int) -> None:
        if self.row.profit_pool_cents < amount_cents:
            raise InsufficientProfitPoolError(
                f"Profit pool holds {self.row.profit_pool_cents} cents, needs {amount_cents}"
            )
        self.row.profit_pool_cents -= amount_cents

    def credit_guarantee_fund(self, amount_cents: int) -> None:
        self.row.credit_guarantee_fund_cents += amount_cents

    def draw_guarantee_fund(self, amount_cents: int) -> None:
        if amount_cents > self.row.credit_guarantee_fund_cents:
            raise ValueError("Guarantee fund draw exceeds the fund")
        self.row.credit_guarantee_fund_cents -= amount_cents

    @property
    def operating_cash_cents(self) -> int:
        return self.row.operating_cash_cents

    @property
    def profit_pool_cents(self) -> int:
        return self.row.profit_pool_cents

    @property
    def guarantee_fund_cents(self) -> int:
        return self.row.credit_guarantee_fund_cents

    @property
    def committed_reserves_cents(self) -> int:
        return self.row.tax_reserve_cents + self.row.operational_reserve_cents + self.row.owner_profit_cents

    @property
    def available_liquidity(self) -> int:
        """Operating cash not earmarked for tax, operations or the owner"""
        return self.row.operating_cash_cents - self.committed_reserves_cents

    def real_liquidity(self, user_balances_cents: int, fixed_costs_cents: int = 0) -> int:
        return self.available_liquidity - user_balances_cents - fixed_costs_cents

    def snapshot(self) -> Dict[str, Any]:
        return {
            "operating_cash_cents": self.row.operating_cash_cents,
            "profit_pool_cents": self.row.profit_pool_cents,
            "tax_reserve_cents": self.row.tax_reserve_cents,
            "operational_reserve_cents": self.row.operational_reserve_cents,
            "owner_profit_cents": self.row.owner_profit_cents,
            "investment_reserve_cents": self.row.investment_reserve_cents,
            "credit_guarantee_fund_cents": self.row.credit_guarantee_fund_cents,
            "total_gateway_costs_cents": self.row.total_gateway_costs_cents,
            "total_manual_costs_cents": self.row.total_manual_costs_cents,
        }


def ensure_reserve_account(db: Session) -> ReserveAccountRow:
    """Create the reserve singleton with empty buckets if it does not exist yet"""
    row = db.query(ReserveAccountRow).filter(ReserveAccountRow.id == RESERVE_ACCOUNT_ID).first()
    if row is None:
        row = ReserveAccountRow(id=RESERVE_ACCOUNT_ID)
        db.add(row)
        db.flush()
    return row


class QuotaInventory:
    """Quota rows per owner"""

    def __init__(self, db: Session):
        self.db = db

    def issue(self, user_id: int, quantity: int, purchase_price_cents: int, share_value_cents: int) -> List[Quota]:
        quotas = [
            Quota(
                user_id=user_id,
                purchase_price_cents=purchase_price_cents,
                current_value_cents=share_value_cents,
                status=QuotaStatus.ACTIVE.value,
            )
            for _ in range(quantity)
        ]
        self.db.add_all(quotas)
        self.db.flush()
        return quotas

    def lock_active(self, user_id: int) -> List[Quota]:
        """Lock a member's active quotas, oldest first"""
        return (
            self.db.query(Quota)
            .filter(Quota.user_id == user_id, Quota.status == QuotaStatus.ACTIVE.value)
            .order_by(Quota.purchased_at.asc(), Quota.id.asc())
            .with_for_update()
            .all()
        )

    def delete(self, quota_ids: Sequence[int]) -> int:
        if not quota_ids:
            return 0
        self.db.flush()
        return (
            self.db.query(Quota)
            .filter(Quota.id.in_(list(quota_ids)))
            .delete(synchronize_session="fetch")
        )

    def holdings(self, user_id: int) -> Tuple[int, int]:
        """(active quota count, total current value in cents)"""
        count, value = (
            self.db.query(func.count(Quota.id), func.coalesce(func.sum(Quota.current_value_cents), 0))
            .filter(Quota.user_id == user_id, Quota.status == QuotaStatus.ACTIVE.value)
            .one()
        )
        return int(count), int(value)


def as_collateral(quotas: Sequence[Quota]) -> List[CollateralQuota]:
    return [CollateralQuota(quota_id=q.id, owner_id=q.user_id, value_cents=q.current_value_cents) for q in quotas]
