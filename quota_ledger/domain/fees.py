"""Fee, gateway-cost and payment-split arithmetic on integer cents"""

from quota_ledger.domain.models import FeeShares, FeeSplit, PaymentMethod, PaymentSplit

# Platform rule 25/25/25/25: quota service fees, upgrades, boosts, retained loan fees
PLATFORM_FEE_SHARES = FeeShares(tax=0.25, operational=0.25, owner=0.25, investment=0.25)

# Gateway tariffs (absorbed by the club)
PIX_FEE_PERCENT = 0.0
PIX_FIXED_FEE_CENTS = 199
CARD_FEE_PERCENT = 0.0299
CARD_FIXED_FEE_CENTS = 49

SHARES_EPSILON = 1e-9


def split_fee(amount_cents: int, shares: FeeShares = PLATFORM_FEE_SHARES) -> FeeSplit:
    """
    Distribute a retained fee across the four reserve buckets.

    Requirements:
    - Shares must sum to 1.0
    - Investment bucket absorbs the rounding remainder so the split is exact

    Example:
        1001 cents at 25/25/25/25 → tax 250, operational 250, owner 250, investment 251
    """
    total_share = shares.tax + shares.operational + shares.owner + shares.investment
    if abs(total_share - 1.0) > SHARES_EPSILON:
        raise ValueError(f"Fee shares must sum to 1.0, got {total_share}")

    if amount_cents <= 0:
        return FeeSplit(0, 0, 0, 0)

    tax = int(amount_cents * shares.tax)
    operational = int(amount_cents * shares.operational)
    owner = int(amount_cents * shares.owner)
    investment = amount_cents - tax - operational - owner

    return FeeSplit(
        tax_cents=tax,
        operational_cents=operational,
        owner_cents=owner,
        investment_cents=investment,
    )


def calculate_gateway_cost(amount_cents: int, method: PaymentMethod = PaymentMethod.PIX) -> int:
    """Cost the payment gateway charges the club for receiving amount_cents"""
    if amount_cents <= 0 or method == PaymentMethod.BALANCE:
        return 0

    if method == PaymentMethod.CARD:
        percent, fixed = CARD_FEE_PERCENT, CARD_FIXED_FEE_CENTS
    else:
        percent, fixed = PIX_FEE_PERCENT, PIX_FIXED_FEE_CENTS

    return round(amount_cents * percent) + fixed


def calculate_withdrawal_fee(amount_cents: int, rate: float, min_fee_cents: int) -> tuple[int, int]:
    """
    Fee charged on a withdrawal request.

    Returns: (fee_cents, net_cents)

    Example:
        10000 cents at 2% with 500 minimum → fee max(200, 500) = 500, net 9500
    """
    fee = max(round(amount_cents * rate), min_fee_cents)
    fee = min(fee, amount_cents)
    return fee, amount_cents - fee


def calculate_origination_fee(amount_cents: int, rate: float) -> tuple[int, int]:
    """
    Origination fee retained when a loan is paid out.

    Returns: (fee_cents, net_cents)
    """
    fee = round(amount_cents * rate)
    return fee, amount_cents - fee


def split_loan_payment(payment_cents: int, principal_cents: int, total_repayment_cents: int) -> PaymentSplit:
    """
    Split a payment into principal and interest proportionally to
    principal / total_repayment. Interest takes the rounding remainder.
    """
    if payment_cents <= 0:
        return PaymentSplit(0, 0)
    if total_repayment_cents <= 0:
        return PaymentSplit(principal_cents=payment_cents, interest_cents=0)

    principal = payment_cents * principal_cents // total_repayment_cents
    principal = min(principal, payment_cents)
    return PaymentSplit(principal_cents=principal, interest_cents=payment_cents - principal)
