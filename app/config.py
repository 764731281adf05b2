import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

_FALSY = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class ClickSettings:
    secret_key: str
    block_user_after_cancel: bool = True


@lru_cache
def get_settings() -> ClickSettings:
    secret_key = os.getenv("CLICK_SECRET_KEY")
    if not secret_key:
        raise RuntimeError("CLICK_SECRET_KEY is not set. Check your .env file.")

    block = os.getenv("CLICK_BLOCK_USER_AFTER_CANCEL", "true").strip().lower()
    return ClickSettings(
        secret_key=secret_key,
        block_user_after_cancel=block not in _FALSY,
    )
