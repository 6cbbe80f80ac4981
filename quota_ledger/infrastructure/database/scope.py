"""One physical database transaction per ledger operation"""

import logging
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from quota_ledger.domain.exceptions import DomainException, ErrorKind, NestedScopeError
from quota_ledger.infrastructure.observability.metrics import scope_failure_counter

# Set while a scope is open in the current thread / task
_scope_active: ContextVar[bool] = ContextVar("quota_ledger_scope_active", default=False)

INFRA_ERROR_MESSAGE = "Storage unavailable or conflicting operation, safe to retry"
UNEXPECTED_ERROR_MESSAGE = "Unexpected internal error"


@dataclass
class ScopeResult:
    """Outcome envelope of a scope: data on success, error and kind on failure"""

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    def as_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error, "error_kind": self.error_kind.value}


class TransactionScope:
    """
    Runs a unit of work inside a single session and commits it atomically.

    Domain failures and storage failures roll back everything the work did and
    come back as a failed ScopeResult. Nested scopes are a programming error
    and raise NestedScopeError.
    """

    def __init__(self, session_factory: sessionmaker | None = None):
        if session_factory is None:
            from quota_ledger.infrastructure.database.session import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory

    def run(self, work: Callable[[Session], Any], name: str = "operation") -> ScopeResult:
        if _scope_active.get():
            raise NestedScopeError(f"Scope '{name}' opened inside an active scope")

        token = _scope_active.set(True)
        session = self.session_factory()
        try:
            data = work(session)
            session.commit()
            return ScopeResult(success=True, data=data)

        except DomainException as e:
            session.rollback()
            scope_failure_counter.labels(error_kind=e.kind.value).inc()
            logging.warning(
                f"Ledger operation rejected: {e}",
                extra={"operation": name, "error_kind": e.kind.value, "error_type": type(e).__name__},
            )
            return ScopeResult(success=False, error=str(e), error_kind=e.kind)

        except SQLAlchemyError as e:
            session.rollback()
            scope_failure_counter.labels(error_kind=ErrorKind.INFRA.value).inc()
            logging.error(
                f"Storage error: {e}",
                extra={"operation": name, "error_kind": ErrorKind.INFRA.value, "error_type": type(e).__name__},
            )
            return ScopeResult(success=False, error=INFRA_ERROR_MESSAGE, error_kind=ErrorKind.INFRA)

        except NestedScopeError:
            session.rollback()
            raise

        except Exception as e:
            session.rollback()
            scope_failure_counter.labels(error_kind=ErrorKind.INFRA.value).inc()
            logging.exception(
                f"Unexpected error: {e}",
                extra={"operation": name, "error_kind": ErrorKind.INFRA.value, "error_type": type(e).__name__},
            )
            return ScopeResult(success=False, error=UNEXPECTED_ERROR_MESSAGE, error_kind=ErrorKind.INFRA)

        finally:
            session.close()
            _scope_active.reset(token)
