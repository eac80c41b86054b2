"""Tests for the expiry worker."""
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from vpn_store.scheduler import ExpirationWorker
from vpn_store.telegram import TelegramAPIError

NOW = datetime(2030, 1, 10, 12, 0, 0)


def _add_account(db, username, expires_in, owner=10, protocol="vmess"):
    expired_at = (NOW + expires_in).isoformat()
    with db.transaction() as cur:
        cur.execute(
            "INSERT INTO accounts (username, protocol, server, owner_user_id, expired_at) VALUES (?, ?, ?, ?, ?)",
            (username, protocol, "SG 1", owner, expired_at),
        )
        cur.execute("INSERT OR IGNORE INTO active_accounts (username, jenis) VALUES (?, ?)", (username, protocol))
        return cur.lastrowid


def _count(db, table):
    with db.transaction() as cur:
        cur.execute(f"SELECT COUNT(*) FROM {table}")
        return cur.fetchone()[0]


@pytest.fixture
def telegram_bot():
    return Mock()


@pytest.fixture
def worker(db, telegram_bot):
    return ExpirationWorker(db=db, telegram_bot=telegram_bot, admin_ids=[1, 2], interval=0.01)


def _texts_to(telegram_bot, chat_id):
    return [c.args[1] for c in telegram_bot.send_message.call_args_list if c.args[0] == chat_id]


class TestExpirationWorker:
    """Test warnings, expiry notices and cleanup."""

    def test_three_day_warning(self, worker, db, telegram_bot):
        """Test an account two days from expiry gets the three day warning once."""
        _add_account(db, "alice", timedelta(days=2))

        assert worker.tick(NOW)["warned"] == 1
        assert worker.tick(NOW)["warned"] == 0

        texts = _texts_to(telegram_bot, 10)
        assert len(texts) == 1
        assert "3 hari" in texts[0]

    def test_one_day_warning(self, worker, db, telegram_bot):
        """Test an account hours from expiry gets only the one day warning."""
        _add_account(db, "bob", timedelta(hours=6))

        assert worker.tick(NOW)["warned"] == 1
        assert "1 hari" in _texts_to(telegram_bot, 10)[0]

    def test_both_warnings_over_time(self, worker, db, telegram_bot):
        """Test an account moves from the three day to the one day warning."""
        _add_account(db, "carol", timedelta(days=2))

        worker.tick(NOW)
        worker.tick(NOW + timedelta(days=1, hours=12))

        texts = _texts_to(telegram_bot, 10)
        assert len(texts) == 2
        assert "3 hari" in texts[0]
        assert "1 hari" in texts[1]

    def test_far_expiry_not_warned(self, worker, db, telegram_bot):
        """Test accounts far from expiry are left alone."""
        _add_account(db, "dave", timedelta(days=10))
        assert worker.tick(NOW) == {"warned": 0, "expired": 0, "deleted": 0}
        telegram_bot.send_message.assert_not_called()

    def test_expired_notice_once(self, worker, db, telegram_bot):
        """Test owners hear about an expired account once."""
        _add_account(db, "erin", -timedelta(hours=1))

        assert worker.tick(NOW)["expired"] == 1
        assert worker.tick(NOW)["expired"] == 0
        assert "kedaluwarsa" in _texts_to(telegram_bot, 10)[0]

    def test_deletes_after_grace_period(self, worker, db, telegram_bot):
        """Test accounts expired for more than three days are removed."""
        _add_account(db, "frank", -timedelta(days=4))
        _add_account(db, "grace", -timedelta(days=1))

        tally = worker.tick(NOW)

        assert tally["deleted"] == 1
        assert _count(db, "accounts") == 1
        assert _count(db, "active_accounts") == 1
        for admin_id in (1, 2):
            summary = _texts_to(telegram_bot, admin_id)
            assert len(summary) == 1
            assert "frank" in summary[0]

    def test_send_failure_does_not_stop_tick(self, worker, db, telegram_bot):
        """Test a failed message still marks the account."""
        telegram_bot.send_message.side_effect = TelegramAPIError("blocked")
        _add_account(db, "heidi", timedelta(days=2))

        assert worker.tick(NOW)["warned"] == 1
        assert worker.tick(NOW)["warned"] == 0

    def test_stop(self, worker):
        """Test the worker thread exits when stopped."""
        worker.clock = lambda: NOW
        worker.start()
        worker.stop()
        worker.join(timeout=2)
        assert not worker.is_alive()
