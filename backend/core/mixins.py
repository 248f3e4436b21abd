from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func


class TimestampMixin:
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(),
                        onupdate=func.now(), nullable=False)


class AccountScopedMixin:
    """Rows owned by one store account; every query filters on it"""
    account_id = Column(String(64), nullable=False, index=True)
