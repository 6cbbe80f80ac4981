"""Credit limit engine - how much a member may borrow at approval time"""

from dataclasses import dataclass

BASIS_POINTS = 10_000

# Loan-to-value on redeemable capital and on platform spend (70%)
LIMIT_BP_OF_QUOTAS = 7_000
LIMIT_BP_OF_SPENT = 7_000

# Non-redeemable share of each quota's admin fee that counts as spend
QUOTA_SPEND_CENTS = 800

SCORE_CEILING = 1000
SCORE_BONUS_MAX_BP = 1_000  # +10% at the ceiling
PRO_BONUS_BP = 500  # +5%


@dataclass
class CreditProfile:
    """Inputs gathered from the store for a single borrower"""

    quota_count: int
    quotas_value_cents: int
    platform_spent_cents: int
    score: int
    is_pro: bool

    @property
    def total_spent_cents(self) -> int:
        return self.quota_count * QUOTA_SPEND_CENTS + self.platform_spent_cents


def limit_bonus_bp(score: int, is_pro: bool) -> int:
    """
    Extra loan-to-value in basis points on top of the 70% base.

    - Score: up to +10% at a score of 1000 (linear)
    - PRO membership: +5%
    """
    capped = min(max(score, 0), SCORE_CEILING)
    bonus = capped * SCORE_BONUS_MAX_BP // SCORE_CEILING
    if is_pro:
        bonus += PRO_BONUS_BP
    return bonus


def compute_credit_limit(profile: CreditProfile) -> int:
    """
    Credit limit in cents, rounded down.

    limit = spent × (70% + bonus) + quotas value × (70% + bonus)

    Example:
        2 quotas (R$ 80 capital, R$ 16 spend), score 500, FREE
        bonus = 5% → 1600 × 0.75 + 8000 × 0.75 = 7200 cents
    """
    bonus = limit_bonus_bp(profile.score, profile.is_pro)
    spent_limit = profile.total_spent_cents * (LIMIT_BP_OF_SPENT + bonus)
    quotas_limit = profile.quotas_value_cents * (LIMIT_BP_OF_QUOTAS + bonus)
    return (spent_limit + quotas_limit) // BASIS_POINTS
