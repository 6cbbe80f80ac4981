"""Pytest fixtures for testing"""

import logging
import pytest
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Generator, Optional
from unittest.mock import MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from quota_ledger.infrastructure.clients.notifications import NotificationClient
from quota_ledger.infrastructure.database.ledger import ensure_reserve_account
from quota_ledger.infrastructure.database.models import (
    Base,
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


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database with an empty reserve account and yield a session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    ensure_reserve_account(db)
    db.commit()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db: Session) -> sessionmaker:
    return TestingSessionLocal


@pytest.fixture
def notifier() -> MagicMock:
    """Notification client that records dispatched notifications"""
    return MagicMock(spec=NotificationClient)


@pytest.fixture
def ops(session_factory: sessionmaker, notifier: MagicMock) -> LedgerOperations:
    return LedgerOperations(session_factory=session_factory, notifier=notifier)


@pytest.fixture
def reserve(db: Session) -> Callable[..., ReserveAccountRow]:
    """Set reserve buckets, e.g. reserve(operating_cash_cents=100000)"""

    def _set(**buckets: int) -> ReserveAccountRow:
        row = db.get(ReserveAccountRow, 1)
        for name, value in buckets.items():
            setattr(row, name, value)
        db.commit()
        return row

    return _set


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    def _make(
        name: str = "Alice Souza",
        balance_cents: int = 0,
        score: int = 0,
        referred_by: Optional[int] = None,
        membership_type: str = "FREE",
    ) -> User:
        user = User(
            name=name,
            balance_cents=balance_cents,
            score=score,
            referred_by=referred_by,
            membership_type=membership_type,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_quotas(db: Session) -> Callable[..., list]:
    def _make(user_id: int, count: int = 1, value_cents: int = 4000, price_cents: int = 5000) -> list:
        quotas = [
            Quota(user_id=user_id, purchase_price_cents=price_cents, current_value_cents=value_cents, status="ACTIVE")
            for _ in range(count)
        ]
        db.add_all(quotas)
        db.commit()
        return quotas

    return _make


@pytest.fixture
def make_loan(db: Session) -> Callable[..., Loan]:
    def _make(
        user_id: int,
        amount_cents: int = 10000,
        total_repayment_cents: Optional[int] = None,
        status: str = "PENDING",
        due_date: Optional[datetime] = None,
        installments_plan: int = 1,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Loan:
        total = total_repayment_cents if total_repayment_cents is not None else amount_cents
        loan = Loan(
            user_id=user_id,
            amount_cents=amount_cents,
            total_repayment_cents=total,
            contracted_repayment_cents=total,
            installments_plan=installments_plan,
            status=status,
            due_date=due_date,
            approved_at=utcnow() - timedelta(days=40) if status != "PENDING" else None,
            meta=meta or {},
        )
        db.add(loan)
        db.commit()
        return loan

    return _make


@pytest.fixture
def make_installment(db: Session) -> Callable[..., LoanInstallment]:
    def _make(loan_id: int, amount_cents: int) -> LoanInstallment:
        installment = LoanInstallment(loan_id=loan_id, amount_cents=amount_cents, source="payment")
        db.add(installment)
        db.commit()
        return installment

    return _make


@pytest.fixture
def make_transaction(db: Session) -> Callable[..., Transaction]:
    def _make(
        user_id: int,
        tx_type: str,
        amount_cents: int,
        meta: Optional[Dict[str, Any]] = None,
        status: str = "PENDING",
    ) -> Transaction:
        tx = Transaction(
            user_id=user_id,
            type=tx_type,
            amount_cents=amount_cents,
            description=f"{tx_type} request",
            status=status,
            meta=meta or {},
        )
        db.add(tx)
        db.commit()
        return tx

    return _make


@pytest.fixture
def make_order(db: Session) -> Callable[..., MarketplaceOrder]:
    def _make(buyer_id: int) -> MarketplaceOrder:
        order = MarketplaceOrder(buyer_id=buyer_id)
        db.add(order)
        db.commit()
        return order

    return _make


@pytest.fixture
def make_listing(db: Session) -> Callable[..., MarketplaceListing]:
    def _make(seller_id: int) -> MarketplaceListing:
        listing = MarketplaceListing(seller_id=seller_id)
        db.add(listing)
        db.commit()
        return listing

    return _make


@pytest.fixture
def root_logging() -> Generator[logging.Logger, None, None]:
    """Restore root handlers after a test that reconfigures logging"""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
