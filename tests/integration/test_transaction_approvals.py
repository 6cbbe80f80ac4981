"""Integration tests for transaction approval and rejection"""

from datetime import timedelta
from sqlalchemy.orm import Session
from quota_ledger.domain.exceptions import ErrorKind
from quota_ledger.infrastructure.database.models import (
    AuditLog,
    Loan,
    LoanInstallment,
    MarketplaceListing,
    MarketplaceOrder,
    Quota,
    ReserveAccountRow,
    Transaction,
    User,
)
from quota_ledger.operations import LedgerOperations
from quota_ledger.utils.date_utils import utcnow


def _reserve(db: Session) -> ReserveAccountRow:
    db.expire_all()
    return db.get(ReserveAccountRow, 1)


def test_withdrawal_fee_and_payout(db: Session, ops: LedgerOperations, reserve, make_user, make_transaction, notifier):
    """Test R$ 100 withdrawal: fee 5 split into buckets, operating cash down by exactly 95"""
    reserve(operating_cash_cents=100000)
    user_id = make_user().id
    tx_id = make_transaction(user_id, "WITHDRAWAL", -10000, {"pix_key": "alice@pix"}).id

    result = ops.approve_or_reject_transaction(tx_id, "APPROVE")

    assert result.success
    assert result.data == {"status": "APPROVED"}
    row = _reserve(db)
    assert row.operating_cash_cents == 90500
    assert row.tax_reserve_cents == 125
    assert row.operational_reserve_cents == 125
    assert row.owner_profit_cents == 125
    assert row.investment_reserve_cents == 125

    tx = db.get(Transaction, tx_id)
    assert tx.payout_status == "PENDING_PAYMENT"
    assert tx.processed_at is not None
    assert tx.meta["net_amount_cents"] == 9500
    assert tx.meta["fee_amount_cents"] == 500
    notifier.dispatch.assert_called_once()


def test_withdrawal_uses_quoted_amounts(db: Session, ops: LedgerOperations, reserve, make_user, make_transaction):
    """Test net and fee quoted at request time are honored"""
    reserve(operating_cash_cents=100000)
    user_id = make_user().id
    tx_id = make_transaction(
        user_id, "WITHDRAWAL", -10000, {"net_amount_cents": 9000, "fee_amount_cents": 1000}
    ).id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success

    row = _reserve(db)
    assert row.operating_cash_cents == 91000
    assert row.tax_reserve_cents == 250


def test_withdrawal_above_real_liquidity_is_not_blocked(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test low liquidity only warns; the payout is still queued"""
    user_id = make_user(balance_cents=50000).id
    tx_id = make_transaction(user_id, "WITHDRAWAL", -10000).id

    result = ops.approve_or_reject_transaction(tx_id, "APPROVE")

    assert result.success
    assert _reserve(db).operating_cash_cents == -9500
    assert db.get(Transaction, tx_id).payout_status == "PENDING_PAYMENT"


def test_deposit_credits_balance_and_cash(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test deposit moves the same amount into the wallet and operating cash"""
    user_id = make_user(name="Alice Souza").id
    tx_id = make_transaction(user_id, "DEPOSIT", 5000, {"sender_name": "alice  souza"}).id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success

    assert _reserve(db).operating_cash_cents == 5000
    user = db.get(User, user_id)
    assert user.balance_cents == 5000
    assert user.security_lock_until is None


def test_deposit_from_third_party_locks_withdrawals(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test a payer name different from the holder sets a 24h security lock"""
    user_id = make_user(name="Alice Souza").id
    tx_id = make_transaction(user_id, "DEPOSIT", 5000, {"sender_name": "Mallory Lima"}).id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success

    db.expire_all()
    user = db.get(User, user_id)
    assert user.balance_cents == 5000
    assert user.security_lock_until > utcnow() + timedelta(hours=23)
    assert db.get(Transaction, tx_id).meta["security_lock_applied"] is True


def test_approval_is_at_most_once(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test a second decision on the same transaction changes nothing"""
    user_id = make_user().id
    tx_id = make_transaction(user_id, "DEPOSIT", 5000).id

    first = ops.approve_or_reject_transaction(tx_id, "APPROVE")
    second = ops.approve_or_reject_transaction(tx_id, "APPROVE")
    third = ops.approve_or_reject_transaction(tx_id, "REJECT")

    assert first.success
    assert not second.success and second.error_kind == ErrorKind.PRECONDITION
    assert not third.success and third.error_kind == ErrorKind.PRECONDITION
    assert db.get(User, user_id).balance_cents == 5000
    assert _reserve(db).operating_cash_cents == 5000
    assert db.get(Transaction, tx_id).status == "APPROVED"


def test_pending_confirmation_is_actionable(db: Session, ops: LedgerOperations, make_user, make_transaction):
    user_id = make_user().id
    tx_id = make_transaction(user_id, "DEPOSIT", 1000, status="PENDING_CONFIRMATION").id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success


def test_unknown_action(ops: LedgerOperations, make_user, make_transaction):
    user_id = make_user().id
    tx_id = make_transaction(user_id, "DEPOSIT", 1000).id

    result = ops.approve_or_reject_transaction(tx_id, "MAYBE")

    assert not result.success
    assert result.error_kind == ErrorKind.PRECONDITION


def test_reject_withdrawal_refunds(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test rejected withdrawal returns the full amount to the wallet"""
    user_id = make_user().id
    tx_id = make_transaction(user_id, "WITHDRAWAL", -10000).id

    result = ops.approve_or_reject_transaction(tx_id, "REJECT")

    assert result.data == {"status": "REJECTED"}
    assert db.get(User, user_id).balance_cents == 10000
    assert _reserve(db).operating_cash_cents == 0
    assert db.query(AuditLog).filter(AuditLog.action == "TRANSACTION_REJECTED").count() == 1


def test_reject_balance_paid_loan_payment(db: Session, ops: LedgerOperations, make_user, make_loan, make_transaction):
    """Test rejected wallet payment refunds and reverts the loan to APPROVED"""
    user_id = make_user().id
    loan_id = make_loan(user_id, 10000, 12000, status="PAYMENT_PENDING").id
    tx_id = make_transaction(user_id, "LOAN_PAYMENT", 6000, {"loan_id": loan_id, "use_balance": True}).id

    assert ops.approve_or_reject_transaction(tx_id, "REJECT").success

    db.expire_all()
    assert db.get(User, user_id).balance_cents == 6000
    assert db.get(Loan, loan_id).status == "APPROVED"


def test_reject_external_buy_quota_no_refund(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test external payments are not refunded to the wallet"""
    user_id = make_user().id
    tx_id = make_transaction(user_id, "BUY_QUOTA", 10000, {"payment_method": "pix"}).id

    assert ops.approve_or_reject_transaction(tx_id, "REJECT").success
    assert db.get(User, user_id).balance_cents == 0


def test_buy_quota_external_pix(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test quota purchase by PIX: quotas issued, cash in net of gateway cost, fee split"""
    user_id = make_user().id
    tx_id = make_transaction(
        user_id, "BUY_QUOTA", 12000, {"quantity": 2, "payment_method": "pix", "service_fee_cents": 2000}
    ).id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success

    quotas = db.query(Quota).filter(Quota.user_id == user_id).all()
    assert len(quotas) == 2
    assert all(q.current_value_cents == 4000 and q.purchase_price_cents == 5000 for q in quotas)

    row = _reserve(db)
    assert row.operating_cash_cents == 12000 - 199
    assert row.total_gateway_costs_cents == 199
    assert row.tax_reserve_cents == 500
    assert row.investment_reserve_cents == 500
    assert db.get(Transaction, tx_id).gateway_cost_cents == 199
    assert db.get(User, user_id).score == 20


def test_buy_quota_quantity_from_amount(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test quantity defaults to amount // quota price"""
    user_id = make_user().id
    tx_id = make_transaction(user_id, "BUY_QUOTA", 15000, {"use_balance": True}).id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success

    assert db.query(Quota).filter(Quota.user_id == user_id).count() == 3
    assert _reserve(db).operating_cash_cents == 0


def test_referral_bonus_deferred_when_profit_pool_low(db: Session, ops: LedgerOperations, reserve, make_user, make_transaction):
    """Test profit pool 3 < bonus 5 records the referral bonus as PENDING"""
    reserve(profit_pool_cents=300)
    referrer_id = make_user(name="Rita").id
    buyer_id = make_user(name="Bruno", referred_by=referrer_id).id
    tx_id = make_transaction(buyer_id, "BUY_QUOTA", 10000, {"quantity": 2, "use_balance": True}).id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success

    bonus = db.query(Transaction).filter(Transaction.type == "REFERRAL_BONUS").one()
    assert bonus.status == "PENDING"
    assert bonus.user_id == referrer_id
    assert bonus.amount_cents == 500
    assert db.get(User, referrer_id).balance_cents == 0
    assert _reserve(db).profit_pool_cents == 300


def test_referral_bonus_paid_from_profit_pool(db: Session, ops: LedgerOperations, reserve, make_user, make_transaction, notifier):
    """Test referrer is paid immediately when the profit pool covers the bonus"""
    reserve(profit_pool_cents=1000)
    referrer_id = make_user(name="Rita").id
    buyer_id = make_user(name="Bruno", referred_by=referrer_id).id
    tx_id = make_transaction(buyer_id, "BUY_QUOTA", 5000, {"use_balance": True}).id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success

    bonus = db.query(Transaction).filter(Transaction.type == "REFERRAL_BONUS").one()
    assert bonus.status == "APPROVED"
    assert db.get(User, referrer_id).balance_cents == 500
    assert _reserve(db).profit_pool_cents == 500

    notifications = notifier.dispatch.call_args[0][0]
    assert {n.user_id for n in notifications} == {buyer_id, referrer_id}


def test_loan_installments_amortize_until_paid(db: Session, ops: LedgerOperations, make_user, make_loan, make_transaction):
    """Test installments split principal/interest, amortize the loan and settle it"""
    user_id = make_user().id
    loan_id = make_loan(user_id, 10000, 12000, status="APPROVED").id
    meta = {"loan_id": loan_id, "payment_type": "installment", "use_balance": True}

    first = make_transaction(user_id, "LOAN_PAYMENT", 6000, meta).id
    assert ops.approve_or_reject_transaction(first, "APPROVE").success

    db.expire_all()
    loan = db.get(Loan, loan_id)
    assert loan.status == "APPROVED"
    assert loan.amount_cents == 5000
    assert loan.total_repayment_cents == 6000
    assert loan.contracted_repayment_cents == 12000
    row = _reserve(db)
    assert row.operating_cash_cents == 5000
    assert row.profit_pool_cents == 1000

    second = make_transaction(user_id, "LOAN_PAYMENT", 6000, meta).id
    assert ops.approve_or_reject_transaction(second, "APPROVE").success

    db.expire_all()
    assert db.get(Loan, loan_id).status == "PAID"
    assert db.query(LoanInstallment).filter(LoanInstallment.loan_id == loan_id).count() == 2
    row = _reserve(db)
    assert row.operating_cash_cents == 10000
    assert row.profit_pool_cents == 2000
    assert db.get(User, user_id).score == 50


def test_full_external_payment(db: Session, ops: LedgerOperations, make_user, make_loan, make_transaction):
    """Test PAYMENT_PENDING loan paid by PIX settles and absorbs the gateway cost"""
    user_id = make_user().id
    loan_id = make_loan(user_id, 10000, 12000, status="PAYMENT_PENDING").id
    tx_id = make_transaction(user_id, "LOAN_PAYMENT", 12000, {"loan_id": loan_id, "payment_method": "pix"}).id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success

    db.expire_all()
    assert db.get(Loan, loan_id).status == "PAID"
    row = _reserve(db)
    assert row.operating_cash_cents == 10000 - 199
    assert row.profit_pool_cents == 2000
    assert row.total_gateway_costs_cents == 199


def test_payment_on_settled_loan_rejected(db: Session, ops: LedgerOperations, make_user, make_loan, make_transaction):
    """Test a loan that is not payable leaves the transaction pending"""
    user_id = make_user().id
    loan_id = make_loan(user_id, 10000, status="PAID").id
    tx_id = make_transaction(user_id, "LOAN_PAYMENT", 1000, {"loan_id": loan_id, "use_balance": True}).id

    result = ops.approve_or_reject_transaction(tx_id, "APPROVE")

    assert not result.success
    assert result.error_kind == ErrorKind.PRECONDITION
    db.expire_all()
    assert db.get(Transaction, tx_id).status == "PENDING"


def test_invalid_metadata(ops: LedgerOperations, make_user, make_transaction):
    """Test a loan payment without loan_id is a precondition failure"""
    user_id = make_user().id
    tx_id = make_transaction(user_id, "LOAN_PAYMENT", 1000, {"payment_type": "installment"}).id

    result = ops.approve_or_reject_transaction(tx_id, "APPROVE")

    assert not result.success
    assert result.error_kind == ErrorKind.PRECONDITION


def test_system_transactions_cannot_be_approved(db: Session, ops: LedgerOperations, make_user, make_transaction):
    user_id = make_user().id
    tx_id = make_transaction(user_id, "SYSTEM_ADJUSTMENT", -1000, {"loan_id": 1}).id

    result = ops.approve_or_reject_transaction(tx_id, "APPROVE")

    assert not result.success
    assert result.error_kind == ErrorKind.PRECONDITION
    assert db.get(Transaction, tx_id).status == "PENDING"


def test_membership_upgrade(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test upgrade makes the member PRO and splits the fee net of gateway cost"""
    user_id = make_user().id
    tx_id = make_transaction(user_id, "MEMBERSHIP_UPGRADE", 2990, {"payment_method": "pix"}).id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success

    row = _reserve(db)
    assert row.tax_reserve_cents + row.operational_reserve_cents + row.owner_profit_cents + row.investment_reserve_cents == 2990 - 199
    assert row.total_gateway_costs_cents == 199
    assert row.operating_cash_cents == 0
    user = db.get(User, user_id)
    assert user.membership_type == "PRO"
    assert user.score == 100


def test_market_purchase(db: Session, ops: LedgerOperations, make_user, make_transaction, make_order):
    """Test paid order moves to WAITING_SHIPPING and the platform fee is split"""
    user_id = make_user().id
    order_id = make_order(user_id).id
    tx_id = make_transaction(
        user_id, "MARKET_PURCHASE", 8000, {"order_id": order_id, "platform_fee_cents": 500, "use_balance": True}
    ).id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success

    assert db.get(MarketplaceOrder, order_id).status == "WAITING_SHIPPING"
    assert _reserve(db).tax_reserve_cents == 125


def test_market_boost(db: Session, ops: LedgerOperations, make_user, make_transaction, make_listing):
    """Test boost flags the listing for seven days"""
    user_id = make_user().id
    listing_id = make_listing(user_id).id
    tx_id = make_transaction(user_id, "MARKET_BOOST", 1000, {"listing_id": listing_id, "use_balance": True}).id

    assert ops.approve_or_reject_transaction(tx_id, "APPROVE").success

    listing = db.get(MarketplaceListing, listing_id)
    assert listing.is_boosted
    assert listing.boost_expires_at > utcnow() + timedelta(days=6)


def test_missing_order_fails_whole_approval(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test a failure after partial work leaves no trace"""
    user_id = make_user().id
    tx_id = make_transaction(user_id, "MARKET_PURCHASE", 8000, {"order_id": 999, "use_balance": True}).id

    result = ops.approve_or_reject_transaction(tx_id, "APPROVE")

    assert not result.success
    assert _reserve(db).tax_reserve_cents == 0
    assert db.get(Transaction, tx_id).status == "PENDING"


def test_withdrawal_quote_must_add_up(db: Session, ops: LedgerOperations, reserve, make_user, make_transaction):
    """Test a quote whose net and fee do not sum to the debited amount is refused untouched"""
    reserve(operating_cash_cents=100000)
    user_id = make_user().id
    tx_id = make_transaction(
        user_id, "WITHDRAWAL", -10000, {"net_amount_cents": 9500, "fee_amount_cents": 5000}
    ).id

    result = ops.approve_or_reject_transaction(tx_id, "APPROVE")

    assert not result.success
    assert result.error_kind == ErrorKind.PRECONDITION
    row = _reserve(db)
    assert row.operating_cash_cents == 100000
    assert row.tax_reserve_cents == 0
    assert db.get(Transaction, tx_id).status == "PENDING"


def test_reject_withdrawal_with_malformed_metadata_refunds(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test an unreadable payload does not keep the debited amount from being returned"""
    user_id = make_user().id
    tx_id = make_transaction(user_id, "WITHDRAWAL", -10000, {"net_amount_cents": -1}).id

    result = ops.approve_or_reject_transaction(tx_id, "REJECT")

    assert result.success
    assert result.data == {"status": "REJECTED"}
    assert db.get(User, user_id).balance_cents == 10000
    assert db.get(Transaction, tx_id).status == "REJECTED"


def test_reject_malformed_balance_payment_refunds(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test a wallet payment with a broken payload is still refunded from the raw flags"""
    user_id = make_user().id
    tx_id = make_transaction(user_id, "LOAN_PAYMENT", 3000, {"use_balance": True}).id

    result = ops.approve_or_reject_transaction(tx_id, "REJECT")

    assert result.success
    assert db.get(User, user_id).balance_cents == 3000


def test_reject_balance_paid_buy_quota_refunds(db: Session, ops: LedgerOperations, make_user, make_transaction):
    """Test wallet-paid quota purchase is returned in full and no quota is issued"""
    user_id = make_user().id
    tx_id = make_transaction(user_id, "BUY_QUOTA", 10000, {"quantity": 2, "use_balance": True}).id

    assert ops.approve_or_reject_transaction(tx_id, "REJECT").success

    assert db.get(User, user_id).balance_cents == 10000
    assert db.query(Quota).filter(Quota.user_id == user_id).count() == 0
    assert _reserve(db).operating_cash_cents == 0


def test_reject_balance_paid_membership_upgrade_refunds(db: Session, ops: LedgerOperations, make_user, make_transaction):
    user_id = make_user().id
    tx_id = make_transaction(user_id, "MEMBERSHIP_UPGRADE", 2990, {"payment_method": "balance"}).id

    assert ops.approve_or_reject_transaction(tx_id, "REJECT").success

    user = db.get(User, user_id)
    assert user.balance_cents == 2990
    assert user.membership_type == "FREE"


def test_reject_balance_paid_market_purchase_refunds(db: Session, ops: LedgerOperations, make_user, make_transaction, make_order):
    user_id = make_user().id
    order_id = make_order(user_id).id
    tx_id = make_transaction(user_id, "MARKET_PURCHASE", 8000, {"order_id": order_id, "use_balance": True}).id

    assert ops.approve_or_reject_transaction(tx_id, "REJECT").success

    assert db.get(User, user_id).balance_cents == 8000
    assert db.get(MarketplaceOrder, order_id).status == "WAITING_PAYMENT"


def test_reject_balance_paid_market_boost_refunds(db: Session, ops: LedgerOperations, make_user, make_transaction, make_listing):
    user_id = make_user().id
    listing_id = make_listing(user_id).id
    tx_id = make_transaction(user_id, "MARKET_BOOST", 1000, {"listing_id": listing_id, "use_balance": True}).id

    assert ops.approve_or_reject_transaction(tx_id, "REJECT").success

    assert db.get(User, user_id).balance_cents == 1000
    assert not db.get(MarketplaceListing, listing_id).is_boosted


def test_referral_bonus_skipped_for_missing_referrer(db: Session, ops: LedgerOperations, reserve, make_user, make_transaction):
    """Test a dangling referrer never blocks the quota purchase"""
    reserve(profit_pool_cents=1000)
    buyer_id = make_user(name="Bruno", referred_by=9999).id
    tx_id = make_transaction(buyer_id, "BUY_QUOTA", 5000, {"use_balance": True}).id

    result = ops.approve_or_reject_transaction(tx_id, "APPROVE")

    assert result.success
    assert db.query(Quota).filter(Quota.user_id == buyer_id).count() == 1
    assert db.query(Transaction).filter(Transaction.type == "REFERRAL_BONUS").count() == 0
    assert _reserve(db).profit_pool_cents == 1000
