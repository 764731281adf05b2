import pytest

from app.config import ClickSettings, get_settings


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("CLICK_SECRET_KEY", "s3cret")
    monkeypatch.delenv("CLICK_BLOCK_USER_AFTER_CANCEL", raising=False)

    assert get_settings() == ClickSettings(secret_key="s3cret", block_user_after_cancel=True)


@pytest.mark.parametrize("value", ["false", "0", "No", " off "])
def test_cancellation_policy_can_be_scoped(monkeypatch, value):
    monkeypatch.setenv("CLICK_SECRET_KEY", "s3cret")
    monkeypatch.setenv("CLICK_BLOCK_USER_AFTER_CANCEL", value)

    assert get_settings().block_user_after_cancel is False


def test_settings_are_loaded_once(monkeypatch):
    monkeypatch.setenv("CLICK_SECRET_KEY", "first")
    settings = get_settings()
    monkeypatch.setenv("CLICK_SECRET_KEY", "second")

    assert get_settings() is settings
    with pytest.raises(AttributeError):
        settings.secret_key = "changed"


def test_missing_secret_is_fatal(monkeypatch):
    monkeypatch.delenv("CLICK_SECRET_KEY", raising=False)
    with pytest.raises(RuntimeError):
        get_settings()
