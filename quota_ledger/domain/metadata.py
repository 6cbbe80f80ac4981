"""Typed per-type transaction payloads and loan terms (pydantic tagged union)"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from quota_ledger.domain.exceptions import InvalidMetadataError
from quota_ledger.domain.models import PaymentMethod, TransactionType


class _PaymentMetadata(BaseModel):
    """Fields shared by every payload that describes how money came in"""

    model_config = ConfigDict(extra="allow")

    use_balance: bool = False
    payment_method: PaymentMethod = PaymentMethod.PIX

    @property
    def is_external(self) -> bool:
        """Money arrived through the gateway instead of the wallet"""
        return not self.use_balance and self.payment_method != PaymentMethod.BALANCE


class BuyQuotaMetadata(_PaymentMetadata):
    kind: Literal["BUY_QUOTA"] = "BUY_QUOTA"
    quantity: Optional[int] = Field(default=None, ge=1)
    service_fee_cents: int = Field(default=0, ge=0)
    base_cost_cents: Optional[int] = Field(default=None, ge=0)
    user_fee_cents: int = Field(default=0, ge=0)


class LoanPaymentMetadata(_PaymentMetadata):
    kind: Literal["LOAN_PAYMENT"] = "LOAN_PAYMENT"
    loan_id: int
    payment_type: Optional[Literal["full_payment", "installment"]] = None
    base_amount_cents: Optional[int] = Field(default=None, ge=0)
    user_fee_cents: int = Field(default=0, ge=0)


class WithdrawalMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["WITHDRAWAL"] = "WITHDRAWAL"
    net_amount_cents: Optional[int] = Field(default=None, ge=0)
    fee_amount_cents: Optional[int] = Field(default=None, ge=0)
    pix_key: Optional[str] = None


class DepositMetadata(_PaymentMetadata):
    kind: Literal["DEPOSIT"] = "DEPOSIT"
    sender_name: Optional[str] = None


class MembershipUpgradeMetadata(_PaymentMetadata):
    kind: Literal["MEMBERSHIP_UPGRADE"] = "MEMBERSHIP_UPGRADE"


class MarketPurchaseMetadata(_PaymentMetadata):
    kind: Literal["MARKET_PURCHASE"] = "MARKET_PURCHASE"
    order_id: int
    platform_fee_cents: Optional[int] = Field(default=None, ge=0)


class MarketBoostMetadata(_PaymentMetadata):
    kind: Literal["MARKET_BOOST"] = "MARKET_BOOST"
    listing_id: int


class ReferralBonusMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["REFERRAL_BONUS"] = "REFERRAL_BONUS"
    referred_user_id: Optional[int] = None


class SystemRecordMetadata(BaseModel):
    """Ledger entries written by the engine itself, never approved by hand"""

    model_config = ConfigDict(extra="allow")

    kind: Literal["SYSTEM_LIQUIDATION", "SYSTEM_ADJUSTMENT", "LOAN_APPROVED"]
    loan_id: Optional[int] = None


TransactionMetadata = Annotated[
    Union[
        BuyQuotaMetadata,
        LoanPaymentMetadata,
        WithdrawalMetadata,
        DepositMetadata,
        MembershipUpgradeMetadata,
        MarketPurchaseMetadata,
        MarketBoostMetadata,
        ReferralBonusMetadata,
        SystemRecordMetadata,
    ],
    Field(discriminator="kind"),
]

_metadata_adapter: TypeAdapter = TypeAdapter(TransactionMetadata)


def parse_transaction_metadata(tx_type: str, raw: Optional[Dict[str, Any]]) -> TransactionMetadata:
    """
    Validate a stored metadata blob into the variant for its transaction type.

    Raises:
        InvalidMetadataError: Unknown type or payload missing/invalid fields
    """
    try:
        kind = TransactionType(tx_type).value
    except ValueError as e:
        raise InvalidMetadataError(f"Unknown transaction type: {tx_type}") from e

    payload = dict(raw or {})
    payload["kind"] = kind
    try:
        return _metadata_adapter.validate_python(payload)
    except ValidationError as e:
        raise InvalidMetadataError(f"Invalid {kind} metadata: {e.error_count()} error(s)") from e


class LoanTerms(BaseModel):
    """Typed view over a loan's metadata column"""

    model_config = ConfigDict(extra="allow")

    guarantor_id: Optional[int] = None
    payout_pix_key: Optional[str] = None
    gfc_fee_cents: int = Field(default=0, ge=0)


def parse_loan_terms(raw: Optional[Dict[str, Any]]) -> LoanTerms:
    try:
        return LoanTerms.model_validate(raw or {})
    except ValidationError as e:
        raise InvalidMetadataError(f"Invalid loan metadata: {e.error_count()} error(s)") from e
