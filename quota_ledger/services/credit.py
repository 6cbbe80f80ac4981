"""Credit limit lookup for a borrower at loan approval time"""

from sqlalchemy.orm import Session

from quota_ledger.domain.credit import CreditProfile, compute_credit_limit
from quota_ledger.domain.models import MembershipType
from quota_ledger.infrastructure.database.ledger import QuotaInventory
from quota_ledger.infrastructure.database.models import User
from quota_ledger.infrastructure.database.repositories import TransactionRepository


def load_credit_profile(db: Session, user: User) -> CreditProfile:
    quota_count, quotas_value = QuotaInventory(db).holdings(user.id)
    return CreditProfile(
        quota_count=quota_count,
        quotas_value_cents=quotas_value,
        platform_spent_cents=TransactionRepository(db).platform_spent_cents(user.id),
        score=user.score,
        is_pro=user.membership_type == MembershipType.PRO.value,
    )


def current_credit_limit(db: Session, user: User) -> int:
    return compute_credit_limit(load_credit_profile(db, user))
