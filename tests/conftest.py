import os
import uuid
from decimal import Decimal

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("CLICK_SECRET_KEY", "test-secret")

from app.models import PaymentRecord, PaymentStatus, UserAccount  # noqa: E402
from app.signature import complete_fields, prepare_fields, sign  # noqa: E402
from app.schemas import ClickRequest  # noqa: E402
from app.store import ConstraintViolationError  # noqa: E402

SECRET = "test-secret"
USER_ID = "3f2b8c1e-9a4d-4e7b-8c21-5d6f7a8b9c0d"


class InMemoryTransactionStore:
    """Dict-backed stand-in for SqlAlchemyTransactionStore."""

    def __init__(self):
        self.users = {}
        self.records = {}
        self.calls = []
        self._next_id = 1

    def add_user(self, user_id=USER_ID):
        self.users[user_id] = UserAccount(id=user_id)
        return self.users[user_id]

    def get_user(self, user_id):
        self.calls.append("get_user")
        return self.users.get(user_id)

    def find_first(self, **filters):
        self.calls.append("find_first")
        for record in sorted(self.records.values(), key=lambda r: r.id):
            if all(getattr(record, key) == value for key, value in filters.items()):
                return record
        return None

    def create(self, **values):
        self.calls.append("create")
        for record in self.records.values():
            if (record.transaction_id == values["transaction_id"]
                    or record.prepare_id == values["prepare_id"]):
                raise ConstraintViolationError("duplicate")
        record = PaymentRecord(id=self._next_id, **values)
        self.records[record.id] = record
        self._next_id += 1
        return record

    def update_status(self, record_id, expected, new, **values):
        self.calls.append("update_status")
        record = self.records[record_id]
        if record.status != expected:
            return False
        record.status = new
        for key, value in values.items():
            setattr(record, key, value)
        return True

    def seed(self, transaction_id="1001", status=PaymentStatus.PENDING,
             amount="1000", user_id=USER_ID, prepare_id=None):
        record = PaymentRecord(
            id=self._next_id,
            user_id=user_id,
            transaction_id=transaction_id,
            merchant_trans_id="order-1",
            prepare_id=prepare_id or 1700000000000000 + self._next_id,
            status=status,
            amount=Decimal(amount),
            provider="Click",
        )
        self.records[record.id] = record
        self._next_id += 1
        return record


def signed(payload, secret=SECRET):
    """Fill in sign_string the way Click computes it for payload's action."""
    payload = dict(payload)
    request = ClickRequest.model_validate({**payload, "sign_string": ""})
    if str(payload["action"]) == "1":
        fields = complete_fields(request, secret)
    else:
        fields = prepare_fields(request, secret)
    payload["sign_string"] = sign(fields)
    return payload


def prepare_payload(**overrides):
    payload = {
        "click_trans_id": "1001",
        "service_id": "42",
        "click_paydoc_id": "555",
        "merchant_trans_id": "order-1",
        "amount": "1000",
        "action": "0",
        "error": "0",
        "error_note": "Success",
        "sign_time": "2026-10-19 10:00:00",
        "param2": USER_ID,
    }
    payload.update(overrides)
    return signed(payload)


def complete_payload(prepare_id, **overrides):
    payload = {
        "click_trans_id": "1001",
        "service_id": "42",
        "click_paydoc_id": "555",
        "merchant_trans_id": "order-1",
        "merchant_prepare_id": str(prepare_id),
        "amount": "1000",
        "action": "1",
        "error": "0",
        "error_note": "Success",
        "sign_time": "2026-10-19 10:00:05",
        "param2": USER_ID,
    }
    payload.update(overrides)
    return signed(payload)


def new_user_id():
    return str(uuid.uuid4())


@pytest.fixture
def store():
    store = InMemoryTransactionStore()
    store.add_user()
    return store
