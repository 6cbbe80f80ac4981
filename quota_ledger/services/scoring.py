"""Member score adjustments"""

import logging

from sqlalchemy.orm import Session

from quota_ledger.infrastructure.database.ledger import BalanceLedger
from quota_ledger.infrastructure.database.models import User

# Score rewards per event
QUOTA_PURCHASE_REWARD = 10  # per quota
LOAN_PAYMENT_REWARD = 25
MEMBERSHIP_UPGRADE_REWARD = 100


class ScoreService:
    """Adjusts member scores; a score never drops below zero"""

    def __init__(self, db: Session):
        self.db = db
        self.balances = BalanceLedger(db)

    def update_score(self, user_id: int, delta: int, reason: str) -> int:
        user = self.balances.lock(user_id)
        return self._apply(user, max(user.score + delta, 0), reason)

    def reset(self, user_id: int, reason: str) -> int:
        user = self.balances.lock(user_id)
        return self._apply(user, 0, reason)

    def _apply(self, user: User, new_score: int, reason: str) -> int:
        old_score = user.score
        user.score = new_score
        logging.info(
            "Score updated",
            extra={"user_id": user.id, "old_score": old_score, "new_score": new_score, "reason": reason},
        )
        return new_score
