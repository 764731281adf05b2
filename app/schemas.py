from enum import IntEnum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict


class ClickAction(IntEnum):
    PREPARE = 0
    COMPLETE = 1


class ClickError(IntEnum):
    SUCCESS = 0
    SIGN_FAILED = -1
    INVALID_AMOUNT = -2
    ACTION_NOT_FOUND = -3
    ALREADY_PAID = -4
    USER_NOT_FOUND = -5
    TRANSACTION_NOT_FOUND = -6
    BAD_REQUEST = -8
    TRANSACTION_CANCELED = -9


class ClickRequest(BaseModel):
    """Callback payload as posted by Click.

    Values are kept as the raw strings the provider sent, since the signature
    is computed over them verbatim.
    """
    model_config = ConfigDict(coerce_numbers_to_str=True, extra="ignore")

    click_trans_id: str
    service_id: str
    click_paydoc_id: Optional[str] = None
    merchant_trans_id: str = ""
    merchant_prepare_id: Optional[str] = None
    amount: str
    action: str
    error: str = "0"
    error_note: Optional[str] = None
    sign_time: str
    sign_string: str
    param2: Optional[str] = None


class ClickResponse(BaseModel):
    click_trans_id: Optional[Union[int, str]] = None
    merchant_trans_id: Optional[str] = None
    merchant_prepare_id: Optional[int] = None
    merchant_confirm_id: Optional[int] = None
    error: int
    error_note: str

    def to_body(self) -> dict:
        return self.model_dump(exclude_none=True)
