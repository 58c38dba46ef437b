from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError

from pushrelay.core.errors import DatabaseError, ValidationError


logger = logging.getLogger(__name__)


def require_tenant_id(tenant_id: str | None) -> None:
    # Refuse unscoped queries so a missing tenant never widens a read or delete.
    if not tenant_id:
        raise ValidationError("tenant_id is required")


def tenant_predicate(model, tenant_id: str) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    # Surface storage failures as opaque errors; details stay in logs and the chained cause.
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("store_operation_failed operation=%s", operation, exc_info=exc)
        raise DatabaseError(f"{operation} failed") from exc
