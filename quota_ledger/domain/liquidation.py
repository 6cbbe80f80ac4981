"""Collateral selection for overdue loans"""

from typing import List, Sequence, Tuple

from quota_ledger.domain.models import CollateralQuota, LiquidationPlan


def consume_quotas(quotas: Sequence[CollateralQuota], debt_cents: int) -> Tuple[List[CollateralQuota], int]:
    """
    Take whole quotas, in order, until debt_cents is covered or quotas run out.

    Returns: (consumed quotas, remaining debt in cents, never negative)

    A quota worth more than the remaining debt is still consumed whole; the
    overshoot is kept by the club rather than refunded.
    """
    consumed: List[CollateralQuota] = []
    remaining = debt_cents

    for quota in quotas:
        if remaining <= 0:
            break
        consumed.append(quota)
        remaining -= quota.value_cents

    return consumed, max(remaining, 0)


def plan_liquidation(
    debt_cents: int,
    borrower_quotas: Sequence[CollateralQuota],
    guarantor_quotas: Sequence[CollateralQuota] = (),
) -> LiquidationPlan:
    """
    Build the liquidation plan: borrower collateral first, then the guarantor's
    for whatever shortfall remains.

    Example:
        debt 20000, borrower [5000], guarantor [20000]
        → borrower 5000 consumed, guarantor 20000 consumed, total 25000, covered
    """
    if debt_cents <= 0:
        return LiquidationPlan(debt_cents=debt_cents)

    borrower_taken, remaining = consume_quotas(borrower_quotas, debt_cents)

    guarantor_taken: List[CollateralQuota] = []
    if remaining > 0:
        guarantor_taken, remaining = consume_quotas(guarantor_quotas, remaining)

    return LiquidationPlan(
        debt_cents=debt_cents,
        borrower_quotas=borrower_taken,
        guarantor_quotas=guarantor_taken,
    )
