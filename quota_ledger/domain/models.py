"""Domain models - enums and pure Python dataclasses for ledger entities"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


class TransactionType(str, Enum):
    BUY_QUOTA = "BUY_QUOTA"
    LOAN_PAYMENT = "LOAN_PAYMENT"
    WITHDRAWAL = "WITHDRAWAL"
    DEPOSIT = "DEPOSIT"
    MEMBERSHIP_UPGRADE = "MEMBERSHIP_UPGRADE"
    MARKET_PURCHASE = "MARKET_PURCHASE"
    MARKET_BOOST = "MARKET_BOOST"
    SYSTEM_LIQUIDATION = "SYSTEM_LIQUIDATION"
    SYSTEM_ADJUSTMENT = "SYSTEM_ADJUSTMENT"
    REFERRAL_BONUS = "REFERRAL_BONUS"
    LOAN_APPROVED = "LOAN_APPROVED"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# Statuses an admin decision can act on
ACTIONABLE_TRANSACTION_STATUSES = (TransactionStatus.PENDING, TransactionStatus.PENDING_CONFIRMATION)


class PayoutStatus(str, Enum):
    NONE = "NONE"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"


class LoanStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    OVERDUE = "OVERDUE"
    PAID = "PAID"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


PAYABLE_LOAN_STATUSES = (LoanStatus.APPROVED, LoanStatus.PAYMENT_PENDING, LoanStatus.OVERDUE)
ACTIVE_DEBT_STATUSES = (LoanStatus.APPROVED, LoanStatus.PAYMENT_PENDING)


class QuotaStatus(str, Enum):
    ACTIVE = "ACTIVE"


class MembershipType(str, Enum):
    FREE = "FREE"
    PRO = "PRO"


class InstallmentSource(str, Enum):
    PAYMENT = "payment"
    LIQUIDATION = "liquidation"
    FGC = "fgc"


class ApprovalAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class PaymentMethod(str, Enum):
    PIX = "pix"
    CARD = "card"
    BALANCE = "balance"


class CashMovement(str, Enum):
    """Every justified reason for operating cash to change"""

    GATEWAY_COST = "gateway_cost"
    LOAN_PAYOUT = "loan_payout"
    LOAN_PRINCIPAL_RETURN = "loan_principal_return"
    QUOTA_BUY_IN = "quota_buy_in"
    QUOTA_RESALE = "quota_resale"
    WITHDRAWAL_PAYOUT = "withdrawal_payout"
    DEPOSIT_INTAKE = "deposit_intake"
    LIQUIDATION_RECOVERY = "liquidation_recovery"


@dataclass(frozen=True)
class FeeShares:
    """Fractions of a retained fee routed to each reserve bucket"""

    tax: float
    operational: float
    owner: float
    investment: float


@dataclass
class FeeSplit:
    """Cents credited to each reserve bucket by one split"""

    tax_cents: int
    operational_cents: int
    owner_cents: int
    investment_cents: int

    @property
    def total_cents(self) -> int:
        return self.tax_cents + self.operational_cents + self.owner_cents + self.investment_cents


@dataclass
class PaymentSplit:
    """Loan payment divided into principal and interest"""

    principal_cents: int
    interest_cents: int


@dataclass
class CollateralQuota:
    """Quota offered as collateral during liquidation"""

    quota_id: int
    owner_id: int
    value_cents: int


@dataclass
class LiquidationPlan:
    """Quotas selected to cover an overdue debt"""

    debt_cents: int
    borrower_quotas: List[CollateralQuota] = field(default_factory=list)
    guarantor_quotas: List[CollateralQuota] = field(default_factory=list)

    @property
    def borrower_value_cents(self) -> int:
        return sum(q.value_cents for q in self.borrower_quotas)

    @property
    def guarantor_value_cents(self) -> int:
        return sum(q.value_cents for q in self.guarantor_quotas)

    @property
    def total_value_cents(self) -> int:
        return self.borrower_value_cents + self.guarantor_value_cents

    @property
    def remaining_debt_cents(self) -> int:
        return max(self.debt_cents - self.total_value_cents, 0)

    @property
    def fully_covered(self) -> bool:
        return self.total_value_cents >= self.debt_cents


@dataclass
class Notification:
    """User notification queued for dispatch after commit"""

    user_id: int
    title: str
    body: str


@dataclass
class ApprovalOutcome:
    """Result of an approval decision, with notifications to send after commit"""

    entity_id: int
    status: str
    entity_type: str = ""
    notifications: List[Notification] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.entity_id, "status": self.status}
