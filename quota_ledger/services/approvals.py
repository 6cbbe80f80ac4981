"""
Admin decisions on pending ledger transactions.

Each decision runs inside the caller's TransactionScope. Lock order is always
transaction / loan / marketplace row, then the reserve singleton, then quota
rows, then user rows.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict

from sqlalchemy.orm import Session

from quota_ledger.config import Settings, settings as default_settings
from quota_ledger.domain.exceptions import (
    EntityNotFoundError,
    InvalidMetadataError,
    LoanNotPayableError,
    UnsupportedTransactionError,
)
from quota_ledger.domain.fees import calculate_gateway_cost, calculate_withdrawal_fee, split_loan_payment
from quota_ledger.domain.metadata import (
    BuyQuotaMetadata,
    DepositMetadata,
    LoanPaymentMetadata,
    MarketBoostMetadata,
    MarketPurchaseMetadata,
    MembershipUpgradeMetadata,
    ReferralBonusMetadata,
    TransactionMetadata,
    WithdrawalMetadata,
    parse_transaction_metadata,
)
from quota_ledger.domain.models import (
    PAYABLE_LOAN_STATUSES,
    ApprovalAction,
    ApprovalOutcome,
    CashMovement,
    InstallmentSource,
    LoanStatus,
    MembershipType,
    Notification,
    PaymentMethod,
    PayoutStatus,
    TransactionStatus,
    TransactionType,
)
from quota_ledger.infrastructure.database.ledger import BalanceLedger, QuotaInventory, ReserveAccount
from quota_ledger.infrastructure.database.models import (
    MarketplaceListing,
    MarketplaceOrder,
    Transaction,
    User,
)
from quota_ledger.infrastructure.database.repositories import (
    AuditLogRepository,
    InstallmentRepository,
    LoanRepository,
    TransactionRepository,
)
from quota_ledger.infrastructure.observability.metrics import liquidity_warning_counter, real_liquidity_gauge
from quota_ledger.services.scoring import (
    LOAN_PAYMENT_REWARD,
    MEMBERSHIP_UPGRADE_REWARD,
    QUOTA_PURCHASE_REWARD,
    ScoreService,
)
from quota_ledger.utils.date_utils import utcnow

# Request paths that debit the wallet up front when paid with balance
BALANCE_PAID_TYPES = (
    TransactionType.BUY_QUOTA,
    TransactionType.LOAN_PAYMENT,
    TransactionType.MEMBERSHIP_UPGRADE,
    TransactionType.MARKET_PURCHASE,
    TransactionType.MARKET_BOOST,
)

ORDER_WAITING_SHIPPING = "WAITING_SHIPPING"


class TransactionApprovalStateMachine:
    """Moves a PENDING transaction to APPROVED or REJECTED exactly once"""

    def __init__(self, db: Session, config: Settings | None = None):
        self.db = db
        self.settings = config or default_settings
        self.transactions = TransactionRepository(db)
        self.loans = LoanRepository(db)
        self.installments = InstallmentRepository(db)
        self.audit = AuditLogRepository(db)
        self.balances = BalanceLedger(db)
        self.quotas = QuotaInventory(db)
        self.scores = ScoreService(db)

        self._handlers: Dict[TransactionType, Callable[[Transaction, TransactionMetadata, ApprovalOutcome], None]] = {
            TransactionType.BUY_QUOTA: self._approve_buy_quota,
            TransactionType.LOAN_PAYMENT: self._approve_loan_payment,
            TransactionType.WITHDRAWAL: self._approve_withdrawal,
            TransactionType.DEPOSIT: self._approve_deposit,
            TransactionType.MEMBERSHIP_UPGRADE: self._approve_membership_upgrade,
            TransactionType.MARKET_PURCHASE: self._approve_market_purchase,
            TransactionType.MARKET_BOOST: self._approve_market_boost,
            TransactionType.REFERRAL_BONUS: self._approve_referral_bonus,
        }

    def approve(self, transaction_id: int, action: ApprovalAction | str) -> ApprovalOutcome:
        """
        Apply an admin decision to a pending transaction.

        Raises:
            AlreadyProcessedError: Transaction missing or no longer pending
            InvalidMetadataError: Stored payload does not match its type (approval only)
            UnsupportedTransactionError: System-generated type
            InsufficientFundsError / InsufficientProfitPoolError: Resource too low
        """
        action = ApprovalAction(action)
        tx = self.transactions.lock_actionable(transaction_id)
        tx_type = TransactionType(tx.type)
        outcome = ApprovalOutcome(entity_id=tx.id, status="", entity_type=tx_type.value)

        if action == ApprovalAction.REJECT:
            self._reject(tx, tx_type, outcome)
        else:
            meta = parse_transaction_metadata(tx.type, tx.meta)
            self._approve(tx, tx_type, meta, outcome)

        return outcome

    def _approve(self, tx: Transaction, tx_type: TransactionType, meta: TransactionMetadata, outcome: ApprovalOutcome) -> None:
        handler = self._handlers.get(tx_type)
        if handler is None:
            raise UnsupportedTransactionError(f"{tx_type.value} transactions cannot be approved manually")

        handler(tx, meta, outcome)

        old_status = tx.status
        tx.status = TransactionStatus.APPROVED.value
        tx.processed_at = utcnow()
        if tx_type == TransactionType.WITHDRAWAL:
            tx.payout_status = PayoutStatus.PENDING_PAYMENT.value
        else:
            tx.payout_status = PayoutStatus.NONE.value

        self.audit.log(
            action="TRANSACTION_APPROVED",
            entity_type="transaction",
            entity_id=tx.id,
            user_id=tx.user_id,
            old_values={"status": old_status},
            new_values={"status": tx.status, "type": tx.type},
        )
        outcome.status = tx.status
        outcome.notifications.append(
            Notification(tx.user_id, "Transaction approved", f"Your {tx_type.value} request was approved.")
        )

    def _reject(self, tx: Transaction, tx_type: TransactionType, outcome: ApprovalOutcome) -> None:
        """Refunds rely on the raw payload so a malformed one never strands a debited balance"""
        try:
            meta = parse_transaction_metadata(tx.type, tx.meta)
        except InvalidMetadataError as e:
            logging.warning(
                f"Rejecting transaction with unreadable metadata: {e}",
                extra={"transaction_id": tx.id, "type": tx_type.value},
            )
            meta = None

        if tx_type == TransactionType.LOAN_PAYMENT and meta is not None:
            loan = self.loans.lock(meta.loan_id)
            if loan is not None and loan.status == LoanStatus.PAYMENT_PENDING.value:
                loan.status = LoanStatus.APPROVED.value

        refund = 0
        if tx_type == TransactionType.WITHDRAWAL:
            refund = abs(tx.amount_cents)
        elif tx_type in BALANCE_PAID_TYPES:
            paid_from_balance = _paid_from_balance(tx.meta) if meta is None else not meta.is_external
            if paid_from_balance:
                refund = abs(tx.amount_cents)
        self.balances.credit(tx.user_id, refund)

        old_status = tx.status
        tx.status = TransactionStatus.REJECTED.value
        tx.processed_at = utcnow()

        self.audit.log(
            action="TRANSACTION_REJECTED",
            entity_type="transaction",
            entity_id=tx.id,
            user_id=tx.user_id,
            old_values={"status": old_status},
            new_values={"status": tx.status, "refund_cents": refund},
        )
        outcome.status = tx.status
        outcome.notifications.append(
            Notification(tx.user_id, "Transaction rejected", f"Your {tx_type.value} request was rejected.")
        )

    def _approve_buy_quota(self, tx: Transaction, meta: BuyQuotaMetadata, outcome: ApprovalOutcome) -> None:
        amount = abs(tx.amount_cents)
        price = self.settings.quota_price_cents
        quantity = meta.quantity or max(amount // price, 1)

        reserve = ReserveAccount.lock(self.db)
        if meta.is_external:
            if meta.base_cost_cents is not None:
                base_cost = meta.base_cost_cents
            else:
                base_cost = amount - meta.user_fee_cents - meta.service_fee_cents
            cost = calculate_gateway_cost(base_cost, meta.payment_method)
            tx.gateway_cost_cents = cost
            reserve.adjust_operating_cash(amount, CashMovement.QUOTA_BUY_IN)
            reserve.absorb_gateway_cost(cost)
            reserve.split_fee(meta.service_fee_cents)

        self.quotas.issue(tx.user_id, quantity, price, self.settings.quota_share_value_cents)
        self.scores.update_score(tx.user_id, QUOTA_PURCHASE_REWARD * quantity, f"Purchase of {quantity} quota(s)")

        buyer = self.balances.lock(tx.user_id)
        if buyer.referred_by:
            self._grant_referral_bonus(reserve, buyer, outcome)

    def _grant_referral_bonus(self, reserve: ReserveAccount, buyer: User, outcome: ApprovalOutcome) -> None:
        """Pay the referrer out of the profit pool, or defer the bonus as PENDING"""
        bonus = self.settings.referral_bonus_cents
        if bonus <= 0:
            return

        referrer_id = buyer.referred_by
        if self.db.get(User, referrer_id) is None:
            logging.warning(
                "Referral bonus skipped, referrer not found",
                extra={"referrer_id": referrer_id, "buyer_id": buyer.id},
            )
            return

        meta = {"referred_user_id": buyer.id}
        if reserve.profit_pool_cents >= bonus:
            reserve.debit_profit_pool(bonus)
            self.balances.credit(referrer_id, bonus)
            self.transactions.create(
                referrer_id,
                TransactionType.REFERRAL_BONUS,
                bonus,
                f"Referral bonus: {buyer.name} bought quota(s)",
                status=TransactionStatus.APPROVED,
                meta=meta,
                processed_at=utcnow(),
            )
            outcome.notifications.append(
                Notification(referrer_id, "Referral bonus", "A member you referred bought quotas. Bonus credited.")
            )
        else:
            self.transactions.create(
                referrer_id,
                TransactionType.REFERRAL_BONUS,
                bonus,
                f"Referral bonus: {buyer.name} bought quota(s) (awaiting profit)",
                status=TransactionStatus.PENDING,
                meta=meta,
            )
            logging.info(
                "Referral bonus deferred",
                extra={"referrer_id": referrer_id, "bonus_cents": bonus, "profit_pool_cents": reserve.profit_pool_cents},
            )

    def _approve_loan_payment(self, tx: Transaction, meta: LoanPaymentMetadata, outcome: ApprovalOutcome) -> None:
        loan = self.loans.lock(meta.loan_id)
        if loan is None:
            raise EntityNotFoundError(f"Loan {meta.loan_id} not found")
        if loan.status not in [s.value for s in PAYABLE_LOAN_STATUSES]:
            raise LoanNotPayableError(f"Loan {loan.id} is {loan.status} and cannot receive payments")

        amount = abs(tx.amount_cents)
        if meta.base_amount_cents is not None:
            payment = meta.base_amount_cents
        else:
            payment = amount - meta.user_fee_cents
        if payment <= 0:
            raise InvalidMetadataError(f"Loan payment {tx.id} resolves to a non-positive amount")

        if meta.payment_type:
            payment_type = meta.payment_type
        elif loan.status == LoanStatus.PAYMENT_PENDING.value:
            payment_type = "full_payment"
        else:
            payment_type = "installment"

        split = split_loan_payment(payment, loan.amount_cents, loan.total_repayment_cents)

        reserve = ReserveAccount.lock(self.db)
        if meta.is_external:
            cost = calculate_gateway_cost(payment, meta.payment_method)
            tx.gateway_cost_cents = cost
            reserve.absorb_gateway_cost(cost)
        reserve.adjust_operating_cash(split.principal_cents, CashMovement.LOAN_PRINCIPAL_RETURN)
        reserve.credit_profit_pool(split.interest_cents)

        self.installments.record(
            loan.id,
            payment,
            source=InstallmentSource.PAYMENT,
            use_balance=not meta.is_external,
            description=f"Transaction {tx.id} ({payment_type})",
        )
        loan.amount_cents = max(loan.amount_cents - split.principal_cents, 0)
        loan.total_repayment_cents = max(loan.total_repayment_cents - payment, 0)

        if payment_type == "full_payment":
            loan.status = LoanStatus.PAID.value
        else:
            paid = self.loans.paid_to_date_cents(loan.id)
            if paid >= loan.contracted_repayment_cents - self.settings.repayment_tolerance_cents:
                loan.status = LoanStatus.PAID.value
            else:
                loan.status = LoanStatus.APPROVED.value

        logging.info(
            "Loan payment applied",
            extra={
                "loan_id": loan.id,
                "payment_cents": payment,
                "principal_cents": split.principal_cents,
                "interest_cents": split.interest_cents,
                "payment_type": payment_type,
                "loan_status": loan.status,
            },
        )
        self.scores.update_score(tx.user_id, LOAN_PAYMENT_REWARD, "Loan payment")

    def _approve_withdrawal(self, tx: Transaction, meta: WithdrawalMetadata, outcome: ApprovalOutcome) -> None:
        amount = abs(tx.amount_cents)
        if meta.net_amount_cents is not None:
            net = meta.net_amount_cents
            fee = meta.fee_amount_cents if meta.fee_amount_cents is not None else amount - net
        elif meta.fee_amount_cents is not None:
            fee = meta.fee_amount_cents
            net = amount - fee
        else:
            fee, net = calculate_withdrawal_fee(
                amount, self.settings.withdrawal_fee_rate, self.settings.withdrawal_min_fee_cents
            )
        if net < 0 or fee < 0:
            raise InvalidMetadataError(f"Withdrawal {tx.id} quotes a fee above the requested amount")
        if net + fee != amount:
            raise InvalidMetadataError(
                f"Withdrawal {tx.id} quotes net {net} + fee {fee}, expected a total of {amount}"
            )

        reserve = ReserveAccount.lock(self.db)
        real_liquidity = reserve.real_liquidity(
            self.balances.total_balances(), self.settings.monthly_fixed_costs_cents
        )
        real_liquidity_gauge.set(real_liquidity)
        if net > real_liquidity:
            liquidity_warning_counter.inc()
            logging.warning(
                "Withdrawal approved above real liquidity",
                extra={"transaction_id": tx.id, "net_amount_cents": net, "real_liquidity_cents": real_liquidity},
            )

        reserve.adjust_operating_cash(-net, CashMovement.WITHDRAWAL_PAYOUT)
        reserve.split_fee(fee)
        tx.meta = {**(tx.meta or {}), "net_amount_cents": net, "fee_amount_cents": fee}

    def _approve_deposit(self, tx: Transaction, meta: DepositMetadata, outcome: ApprovalOutcome) -> None:
        amount = abs(tx.amount_cents)
        reserve = ReserveAccount.lock(self.db)
        reserve.adjust_operating_cash(amount, CashMovement.DEPOSIT_INTAKE)

        user = self.balances.lock(tx.user_id)
        if meta.sender_name and _normalize_name(meta.sender_name) != _normalize_name(user.name):
            lock_until = utcnow() + timedelta(hours=self.settings.deposit_security_lock_hours)
            user.security_lock_until = lock_until
            tx.meta = {**(tx.meta or {}), "security_lock_applied": True, "security_lock_until": lock_until.isoformat()}
            logging.warning(
                "Deposit sender differs from account holder, withdrawals locked",
                extra={"transaction_id": tx.id, "user_id": user.id},
            )
            outcome.notifications.append(
                Notification(
                    user.id,
                    "Security lock",
                    "A deposit came from a third party. Withdrawals are paused for "
                    f"{self.settings.deposit_security_lock_hours} hours.",
                )
            )

        self.balances.credit(user.id, amount)

    def _record_platform_fee(self, tx: Transaction, meta, fee_cents: int) -> None:
        """Split a platform fee net of the gateway cost the club absorbed"""
        reserve = ReserveAccount.lock(self.db)
        cost = 0
        if meta.is_external:
            cost = calculate_gateway_cost(abs(tx.amount_cents), meta.payment_method)
            tx.gateway_cost_cents = cost
            reserve.record_gateway_cost(cost)
        reserve.split_fee(max(fee_cents - cost, 0))

    def _approve_membership_upgrade(self, tx: Transaction, meta: MembershipUpgradeMetadata, outcome: ApprovalOutcome) -> None:
        self._record_platform_fee(tx, meta, abs(tx.amount_cents))
        user = self.balances.lock(tx.user_id)
        user.membership_type = MembershipType.PRO.value
        self.scores.update_score(tx.user_id, MEMBERSHIP_UPGRADE_REWARD, "Membership upgrade")

    def _approve_market_purchase(self, tx: Transaction, meta: MarketPurchaseMetadata, outcome: ApprovalOutcome) -> None:
        order = (
            self.db.query(MarketplaceOrder)
            .filter(MarketplaceOrder.id == meta.order_id)
            .with_for_update()
            .first()
        )
        if order is None:
            raise EntityNotFoundError(f"Marketplace order {meta.order_id} not found")

        fee = meta.platform_fee_cents if meta.platform_fee_cents is not None else abs(tx.amount_cents)
        self._record_platform_fee(tx, meta, fee)
        order.status = ORDER_WAITING_SHIPPING
        order.updated_at = utcnow()

    def _approve_market_boost(self, tx: Transaction, meta: MarketBoostMetadata, outcome: ApprovalOutcome) -> None:
        listing = (
            self.db.query(MarketplaceListing)
            .filter(MarketplaceListing.id == meta.listing_id)
            .with_for_update()
            .first()
        )
        if listing is None:
            raise EntityNotFoundError(f"Marketplace listing {meta.listing_id} not found")

        self._record_platform_fee(tx, meta, abs(tx.amount_cents))
        listing.is_boosted = True
        listing.boost_expires_at = utcnow() + timedelta(days=self.settings.boost_duration_days)

    def _approve_referral_bonus(self, tx: Transaction, meta: ReferralBonusMetadata, outcome: ApprovalOutcome) -> None:
        bonus = abs(tx.amount_cents)
        reserve = ReserveAccount.lock(self.db)
        reserve.debit_profit_pool(bonus)
        self.balances.credit(tx.user_id, bonus)


def _paid_from_balance(raw: Dict[str, Any] | None) -> bool:
    raw = raw if isinstance(raw, dict) else {}
    return raw.get("use_balance") is True or raw.get("payment_method") == PaymentMethod.BALANCE.value


def _normalize_name(name: str) -> str:
    return " ".join(name.split()).casefold()
