"""SQLAlchemy ORM models for the quota club ledger"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class User(Base):
    """Club member; balance and score are mutated only by the ledger"""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_users_balance_non_negative"),
        CheckConstraint("score >= 0", name="ck_users_score_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    balance_cents = Column(BigInteger, nullable=False, default=0)
    score = Column(Integer, nullable=False, default=0)
    referred_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    membership_type = Column(Text, nullable=False, default="FREE")
    security_lock_until = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    quotas = relationship("Quota", back_populates="owner")


class Quota(Base):
    """Capital unit; deleted when liquidated"""

    __tablename__ = "quotas"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    purchase_price_cents = Column(BigInteger, nullable=False)
    current_value_cents = Column(BigInteger, nullable=False)
    status = Column(Text, nullable=False, default="ACTIVE")
    purchased_at = Column(DateTime, nullable=False, server_default=func.now())

    owner = relationship("User", back_populates="quotas")


class Loan(Base):
    """Member loan; amount and total_repayment amortize with each installment"""

    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    total_repayment_cents = Column(BigInteger, nullable=False)
    contracted_repayment_cents = Column(BigInteger, nullable=False)
    installments_plan = Column(Integer, nullable=False, default=1)
    status = Column(Text, nullable=False, default="PENDING", index=True)
    due_date = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    installments = relationship("LoanInstallment", back_populates="loan", order_by="LoanInstallment.id")


class LoanInstallment(Base):
    """Append-only record of money recovered against a loan"""

    __tablename__ = "loan_installments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    use_balance = Column(Boolean, nullable=False, default=False)
    source = Column(Text, nullable=False, default="payment")
    fgc_covered = Column(Boolean, nullable=False, default=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    loan = relationship("Loan", back_populates="installments")


class Transaction(Base):
    """Generic ledger entry; PENDING rows are transitioned exactly once"""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(Text, nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="PENDING", index=True)
    payout_status = Column(Text, nullable=False, default="NONE")
    gateway_cost_cents = Column(BigInteger, nullable=False, default=0)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    processed_at = Column(DateTime, nullable=True)


class ReserveAccountRow(Base):
    """Singleton row holding the club's cash, profit pool and reserve buckets"""

    __tablename__ = "reserve_account"

    id = Column(Integer, primary_key=True)
    operating_cash_cents = Column(BigInteger, nullable=False, default=0)
    profit_pool_cents = Column(BigInteger, nullable=False, default=0)
    tax_reserve_cents = Column(BigInteger, nullable=False, default=0)
    operational_reserve_cents = Column(BigInteger, nullable=False, default=0)
    owner_profit_cents = Column(BigInteger, nullable=False, default=0)
    investment_reserve_cents = Column(BigInteger, nullable=False, default=0)
    credit_guarantee_fund_cents = Column(BigInteger, nullable=False, default=0)
    total_gateway_costs_cents = Column(BigInteger, nullable=False, default=0)
    total_manual_costs_cents = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())


class AuditLog(Base):
    """Append-only trail of state-changing actions"""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True, index=True)
    action = Column(Text, nullable=False)
    entity_type = Column(Text, nullable=True)
    entity_id = Column(Text, nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class MarketplaceOrder(Base):
    """Order owned by the marketplace feature; status flipped on payment approval"""

    __tablename__ = "marketplace_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(Text, nullable=False, default="WAITING_PAYMENT")
    updated_at = Column(DateTime, nullable=True)


class MarketplaceListing(Base):
    """Listing owned by the marketplace feature; boost flag flipped on payment approval"""

    __tablename__ = "marketplace_listings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    is_boosted = Column(Boolean, nullable=False, default=False)
    boost_expires_at = Column(DateTime, nullable=True)
