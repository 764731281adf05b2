import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.click_service import ClickService
from app.config import ClickSettings, get_settings
from app.database import SessionLocal
from app.store import SqlAlchemyTransactionStore

logger = logging.getLogger(__name__)

router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_click_service(
    db: Session = Depends(get_db),
    settings: ClickSettings = Depends(get_settings),
) -> ClickService:
    return ClickService(
        SqlAlchemyTransactionStore(db),
        settings.secret_key,
        block_user_after_cancel=settings.block_user_after_cancel,
    )


async def read_payload(request: Request) -> dict:
    """Click posts form-encoded bodies; JSON is accepted for manual testing."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            logger.warning("Click callback with unparseable JSON body")
            return {}
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return dict(form)


@router.post("/click/prepare")
def click_prepare(
    payload: dict = Depends(read_payload),
    service: ClickService = Depends(get_click_service),
):
    return service.handle(payload).to_body()


@router.post("/click/complete")
def click_complete(
    payload: dict = Depends(read_payload),
    service: ClickService = Depends(get_click_service),
):
    return service.handle(payload).to_body()


@router.get("/health")
def health():
    return {"ok": True}
