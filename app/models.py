import enum
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger, Column, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String,
)

from app.database import Base

CLICK_PROVIDER = "Click"


def utcnow():
    return datetime.now(timezone.utc)


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELED = "CANCELED"


class UserAccount(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)      # canonical UUID string
    created_at = Column(DateTime(timezone=True), default=utcnow)


class PaymentRecord(Base):
    __tablename__ = "click_payments"
    __table_args__ = (
        Index("ix_click_payments_prepare_user", "prepare_id", "user_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    transaction_id = Column(String(64), nullable=False, unique=True)   # click_trans_id
    merchant_trans_id = Column(String(255))
    prepare_id = Column(BigInteger, nullable=False, unique=True)
    status = Column(
        Enum(PaymentStatus, name="payment_status", native_enum=False),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    amount = Column(Numeric(12, 2), nullable=False)
    provider = Column(String(32), nullable=False, default=CLICK_PROVIDER)
    provider_error = Column(Integer)               # set when Complete cancels
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"PaymentRecord(transaction_id={self.transaction_id!r}, status={self.status!r})"
