import pytest

from shared import admin_notifier
from affiliate_api import main


@pytest.fixture
def app_without_storage(monkeypatch):
    async def noop():
        return None

    monkeypatch.setattr(main, "init_db", noop)
    monkeypatch.setattr(main, "close_db", noop)
    monkeypatch.setattr(main, "close_redis", noop)
    admin_notifier.set_send_func(None)
    yield main.app
    admin_notifier.set_send_func(None)


async def test_log_sender_reaches_every_admin(monkeypatch, caplog):
    monkeypatch.setattr(admin_notifier, "ADMIN_IDS", ["admin-1", "admin-2"])

    sent = await admin_notifier.notify_admin_error(
        "Payout failed", {"payout_id": "p-1"}, send_func=admin_notifier.log_send
    )

    assert sent == 2
    assert "payout_id: p-1" in caplog.text


async def test_without_sender_nothing_is_delivered(monkeypatch):
    monkeypatch.setattr(admin_notifier, "ADMIN_IDS", ["admin-1"])
    admin_notifier.set_send_func(None)

    assert await admin_notifier.notify_admin_info("hello") == 0


async def test_startup_registers_log_sender(app_without_storage):
    async with main.lifespan(app_without_storage):
        assert admin_notifier.get_send_func() is admin_notifier.log_send


async def test_startup_keeps_registered_sender(app_without_storage):
    async def deliver(admin_id, message):
        return None

    admin_notifier.set_send_func(deliver)

    async with main.lifespan(app_without_storage):
        assert admin_notifier.get_send_func() is deliver
