import logging
from typing import Optional, Protocol

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import PaymentRecord, PaymentStatus, UserAccount, utcnow

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Unrecoverable persistence failure; no business error code applies."""


class ConstraintViolationError(StoreError):
    """An insert broke a unique or foreign-key constraint; the caller re-reads to tell which."""


class TransactionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def find_first(self, **filters) -> Optional[PaymentRecord]: ...

    def create(self, **values) -> PaymentRecord: ...

    def update_status(
        self,
        record_id: int,
        expected: PaymentStatus,
        new: PaymentStatus,
        **values,
    ) -> bool: ...


class SqlAlchemyTransactionStore:
    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        try:
            return self.db.get(UserAccount, user_id)
        except SQLAlchemyError as exc:
            raise self._fault("get_user", exc)

    def find_first(self, **filters) -> Optional[PaymentRecord]:
        try:
            return (
                self.db.query(PaymentRecord)
                .filter_by(**filters)
                .order_by(PaymentRecord.id)
                .first()
            )
        except SQLAlchemyError as exc:
            raise self._fault("find_first", exc)

    def create(self, **values) -> PaymentRecord:
        record = PaymentRecord(**values)
        self.db.add(record)
        try:
            self.db.commit()
            self.db.refresh(record)
        except IntegrityError as exc:
            self.db.rollback()
            raise ConstraintViolationError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise self._fault("create", exc)
        return record

    def update_status(self, record_id, expected, new, **values) -> bool:
        """Compare-and-swap on status: only a row still in `expected` is moved."""
        stmt = (
            update(PaymentRecord)
            .where(PaymentRecord.id == record_id, PaymentRecord.status == expected)
            .values(status=new, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as exc:
            raise self._fault("update_status", exc)
        # Later reads must see the committed row, not the identity-map copy
        self.db.expire_all()
        return result.rowcount == 1

    def _fault(self, operation: str, exc: SQLAlchemyError) -> StoreError:
        self.db.rollback()
        logger.error("Payment store %s failed: %s", operation, exc)
        return StoreError(f"{operation} failed: {exc}")
