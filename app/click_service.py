"""Click SHOP-API merchant callbacks: the Prepare / Complete state machine.

Every path returns a ``ClickResponse``; business failures are error codes in
the body, never exceptions. Only ``StoreError`` escapes, for the HTTP layer to
turn into a 5xx.

Each phase is an ordered tuple of guards. Guards are evaluated in order and the
first violated one decides the response, so the tuple order is the precedence
the provider sees.
"""
import logging
import time
from collections import namedtuple
from decimal import Decimal, InvalidOperation
from functools import cached_property
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from app.identifiers import canonical_identifier
from app.models import CLICK_PROVIDER, PaymentRecord, PaymentStatus
from app.schemas import ClickAction, ClickError, ClickRequest, ClickResponse
from app.signature import complete_fields, prepare_fields, verify
from app.store import ConstraintViolationError, StoreError, TransactionStore

logger = logging.getLogger(__name__)

Guard = namedtuple("Guard", ["name", "violated", "error", "note"])


def new_prepare_id() -> int:
    """Microseconds since the epoch at record creation."""
    return time.time_ns() // 1_000


def parse_amount(raw: str) -> Optional[Decimal]:
    try:
        amount = Decimal(raw.strip())
    except (InvalidOperation, AttributeError):
        return None
    if not amount.is_finite():
        return None
    return amount


def is_storable_amount(amount: Decimal) -> bool:
    """Positive with at most two decimals, so it fits Numeric(12, 2) exactly."""
    return amount > 0 and amount.as_tuple().exponent >= -2


def parse_int(raw: Optional[str]) -> Optional[int]:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return None


class CallbackContext:
    """One request's view of the store; each lookup runs at most once."""

    def __init__(self, store: TransactionStore, secret_key: str, request: ClickRequest,
                 amount: Decimal, provider_error: int, block_user_after_cancel: bool = True):
        self.store = store
        self.secret_key = secret_key
        self.request = request
        self.amount = amount
        self.provider_error = provider_error
        self.block_user_after_cancel = block_user_after_cancel

    @property
    def transaction_id(self) -> str:
        return self.request.click_trans_id

    @cached_property
    def user_id(self) -> Optional[str]:
        # Signatures use the raw param2; lookups and writes use this form
        return canonical_identifier(self.request.param2)

    @cached_property
    def prepare_signed(self) -> bool:
        return verify(prepare_fields(self.request, self.secret_key), self.request.sign_string)

    @cached_property
    def complete_signed(self) -> bool:
        return verify(complete_fields(self.request, self.secret_key), self.request.sign_string)

    @cached_property
    def user(self):
        return self.store.get_user(self.user_id)

    @cached_property
    def existing(self) -> Optional[PaymentRecord]:
        return self.store.find_first(transaction_id=self.transaction_id)

    @cached_property
    def paid_transaction(self) -> Optional[PaymentRecord]:
        return self.store.find_first(
            transaction_id=self.transaction_id, status=PaymentStatus.PAID
        )

    @cached_property
    def blocking_cancellation(self) -> Optional[PaymentRecord]:
        if self.block_user_after_cancel:
            return self.store.find_first(user_id=self.user_id, status=PaymentStatus.CANCELED)
        return self.store.find_first(
            transaction_id=self.transaction_id, status=PaymentStatus.CANCELED
        )

    @cached_property
    def prepare_id(self) -> Optional[int]:
        return parse_int(self.request.merchant_prepare_id)

    @cached_property
    def prepared(self) -> Optional[PaymentRecord]:
        if self.prepare_id is None:
            return None
        return self.store.find_first(prepare_id=self.prepare_id, user_id=self.user_id)

    @cached_property
    def paid_prepared(self) -> Optional[PaymentRecord]:
        return self.store.find_first(
            transaction_id=self.transaction_id,
            prepare_id=self.prepare_id,
            status=PaymentStatus.PAID,
        )

    def conflicting_prepare(self) -> bool:
        record = self.existing
        if record is None or record.status != PaymentStatus.PENDING:
            return False
        return record.user_id != self.user_id or Decimal(record.amount) != self.amount


PREPARE_GUARDS = (
    Guard("signature", lambda ctx: not ctx.prepare_signed,
          ClickError.SIGN_FAILED, "Invalid sign_string"),
    Guard("user_id_format", lambda ctx: ctx.user_id is None,
          ClickError.BAD_REQUEST, "Invalid userId"),
    Guard("already_paid", lambda ctx: ctx.paid_transaction is not None,
          ClickError.ALREADY_PAID, "Already paid"),
    Guard("cancellation", lambda ctx: ctx.blocking_cancellation is not None,
          ClickError.TRANSACTION_CANCELED, "Cancelled"),
    Guard("user_exists", lambda ctx: ctx.user is None,
          ClickError.USER_NOT_FOUND, "Invalid userId"),
    Guard("transaction_canceled",
          lambda ctx: ctx.existing is not None and ctx.existing.status == PaymentStatus.CANCELED,
          ClickError.TRANSACTION_CANCELED, "Transaction canceled"),
    Guard("conflicting_prepare", lambda ctx: ctx.conflicting_prepare(),
          ClickError.BAD_REQUEST, "Transaction already prepared"),
)

COMPLETE_GUARDS = (
    Guard("signature", lambda ctx: not ctx.complete_signed,
          ClickError.SIGN_FAILED, "Invalid sign_string"),
    Guard("user_id_format", lambda ctx: ctx.user_id is None,
          ClickError.BAD_REQUEST, "Invalid userId"),
    Guard("user_exists", lambda ctx: ctx.user is None,
          ClickError.USER_NOT_FOUND, "Invalid userId"),
    Guard("prepared", lambda ctx: ctx.prepared is None,
          ClickError.TRANSACTION_NOT_FOUND, "Invalid merchant_prepare_id"),
    Guard("already_paid", lambda ctx: ctx.paid_prepared is not None,
          ClickError.ALREADY_PAID, "Already paid"),
    Guard("transaction_mismatch", lambda ctx: ctx.prepared.transaction_id != ctx.transaction_id,
          ClickError.BAD_REQUEST, "click_trans_id does not match merchant_prepare_id"),
    Guard("amount", lambda ctx: Decimal(ctx.prepared.amount) != ctx.amount,
          ClickError.INVALID_AMOUNT, "Invalid amount"),
    Guard("transaction_canceled", lambda ctx: ctx.prepared.status == PaymentStatus.CANCELED,
          ClickError.TRANSACTION_CANCELED, "Transaction canceled"),
)


def first_violation(guards, ctx: CallbackContext) -> Optional[Guard]:
    for guard in guards:
        if guard.violated(ctx):
            return guard
    return None


def _echo_trans_id(raw: str):
    return int(raw) if raw.isdigit() else raw


class ClickService:
    def __init__(self, store: TransactionStore, secret_key: str, block_user_after_cancel: bool = True):
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        self.store = store
        self._secret_key = secret_key
        self.block_user_after_cancel = block_user_after_cancel

    def handle(self, payload: Mapping[str, Any]) -> ClickResponse:
        """Dispatch a raw callback payload by its ``action`` code."""
        action = parse_int(payload.get("action"))
        if action not in (ClickAction.PREPARE, ClickAction.COMPLETE):
            logger.warning("Click callback with unknown action %r", payload.get("action"))
            return ClickResponse(error=ClickError.ACTION_NOT_FOUND, error_note="Invalid action")

        try:
            request = ClickRequest.model_validate(dict(payload))
        except ValidationError as exc:
            logger.warning("Malformed Click callback: %s", exc.errors(include_url=False))
            return ClickResponse(error=ClickError.BAD_REQUEST, error_note="Malformed request")

        amount = parse_amount(request.amount)
        if amount is None:
            return ClickResponse(error=ClickError.BAD_REQUEST, error_note="Invalid amount")
        if action == ClickAction.PREPARE and not is_storable_amount(amount):
            return ClickResponse(error=ClickError.BAD_REQUEST, error_note="Invalid amount")
        provider_error = parse_int(request.error)
        if provider_error is None:
            return ClickResponse(error=ClickError.BAD_REQUEST, error_note="Invalid error code")

        ctx = self._context(request, amount, provider_error)
        logger.info("Click %s for transaction %s", ClickAction(action).name.lower(), ctx.transaction_id)
        if action == ClickAction.PREPARE:
            return self.prepare(ctx)
        return self.complete(ctx)

    def prepare(self, ctx: CallbackContext) -> ClickResponse:
        rejected = self._reject(PREPARE_GUARDS, ctx)
        if rejected:
            return rejected

        if ctx.existing is not None:
            # Provider redelivery of a Prepare we already accepted
            logger.info("Replaying prepare for transaction %s", ctx.transaction_id)
            return self._prepared(ctx, ctx.existing)

        try:
            record = self.store.create(
                user_id=ctx.user_id,
                transaction_id=ctx.transaction_id,
                merchant_trans_id=ctx.request.merchant_trans_id,
                prepare_id=new_prepare_id(),
                status=PaymentStatus.PENDING,
                amount=ctx.amount,
                provider=CLICK_PROVIDER,
            )
        except ConstraintViolationError:
            return self._prepare_after_race(ctx)

        logger.info("Transaction %s prepared as %s", record.transaction_id, record.prepare_id)
        return self._prepared(ctx, record)

    def complete(self, ctx: CallbackContext) -> ClickResponse:
        rejected = self._reject(COMPLETE_GUARDS, ctx)
        if rejected:
            return rejected

        record = ctx.prepared
        if ctx.provider_error > 0:
            if not self.store.update_status(record.id, PaymentStatus.PENDING, PaymentStatus.CANCELED,
                                            provider_error=ctx.provider_error):
                return self._lost_transition(record)
            logger.info("Transaction %s canceled by provider error %s",
                        ctx.transaction_id, ctx.provider_error)
            return ClickResponse(error=ctx.provider_error, error_note="Failed")

        if not self.store.update_status(record.id, PaymentStatus.PENDING, PaymentStatus.PAID):
            return self._lost_transition(record)
        logger.info("Transaction %s paid", ctx.transaction_id)
        return ClickResponse(
            click_trans_id=_echo_trans_id(ctx.transaction_id),
            merchant_trans_id=ctx.request.merchant_trans_id,
            merchant_confirm_id=record.id,
            error=ClickError.SUCCESS,
            error_note="Success",
        )

    def _context(self, request, amount, provider_error) -> CallbackContext:
        return CallbackContext(self.store, self._secret_key, request, amount, provider_error,
                               block_user_after_cancel=self.block_user_after_cancel)

    def _reject(self, guards, ctx: CallbackContext) -> Optional[ClickResponse]:
        guard = first_violation(guards, ctx)
        if guard is None:
            return None
        logger.warning("Click transaction %s rejected by %s guard (%s)",
                       ctx.transaction_id, guard.name, int(guard.error))
        return ClickResponse(error=guard.error, error_note=guard.note)

    def _prepare_after_race(self, ctx: CallbackContext) -> ClickResponse:
        retry = self._context(ctx.request, ctx.amount, ctx.provider_error)
        if retry.existing is None:
            # Not a transaction race: a prepare_id collision or a vanished user
            raise StoreError(f"could not allocate a prepare id for {ctx.transaction_id}")
        rejected = self._reject(PREPARE_GUARDS, retry)
        if rejected:
            return rejected
        return self._prepared(retry, retry.existing)

    def _lost_transition(self, record: PaymentRecord) -> ClickResponse:
        current = self.store.find_first(id=record.id)
        if current is not None and current.status == PaymentStatus.PAID:
            return ClickResponse(error=ClickError.ALREADY_PAID, error_note="Already paid")
        if current is not None and current.status == PaymentStatus.CANCELED:
            return ClickResponse(error=ClickError.TRANSACTION_CANCELED, error_note="Transaction canceled")
        raise StoreError(f"status update for payment {record.id} was not applied")

    @staticmethod
    def _prepared(ctx: CallbackContext, record: PaymentRecord) -> ClickResponse:
        return ClickResponse(
            click_trans_id=_echo_trans_id(ctx.transaction_id),
            merchant_trans_id=ctx.request.merchant_trans_id,
            merchant_prepare_id=record.prepare_id,
            error=ClickError.SUCCESS,
            error_note="Success",
        )
