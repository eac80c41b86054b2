"""Shared fixtures: a throwaway database, a mock bot and a scripted provisioner."""
import pytest
from unittest.mock import Mock

from vpn_store.config import Settings
from vpn_store.database import Database
from vpn_store.handlers import BotApp
from vpn_store.payments import PakasirClient
from vpn_store.provisioning import ProtocolProvisioner, ProvisionResult
from vpn_store.sessions import SessionStore


class FakeTimer:
    """Stands in for threading.Timer; tests fire it by hand."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False

    def start(self):
        self.started = True

    def fire(self):
        self.function()


class TimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function):
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def last(self):
        return self.timers[-1]


class FakeProvisioner(ProtocolProvisioner):
    """Returns queued results, or a successful account when the queue is empty."""

    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.requests = []

    def _next(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.results:
            return self.results.pop(0)
        return ProvisionResult(
            ok=True,
            username=request.username,
            protocol=request.protocol,
            expires_at="2030-01-01",
            details={"host": request.server["domain"]},
        )

    def create(self, request):
        return self._next(request)

    def renew(self, request):
        return self._next(request)

    def trial(self, request):
        return self._next(request)


ADMIN_ID = 1


@pytest.fixture
def settings(tmp_path):
    return Settings(
        bot_token="123:abc",
        admin_ids=[ADMIN_ID],
        group_id="-100",
        data_qris="00020101QRIS",
        merchant_id="M1",
        server_key="SK",
        pakasir_project="store",
        min_deposit=10000,
        database_path=str(tmp_path / "data" / "botvpn.db"),
        backup_dir=str(tmp_path / "data" / "backups"),
        upload_dir=str(tmp_path / "data" / "uploaded_restore"),
        vars_path=str(tmp_path / ".vars.json"),
        poll_interval=0,
    )


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    yield database
    database.close()


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def bot():
    telegram = Mock()
    telegram.send_message.return_value = {"message_id": 42}
    return telegram


@pytest.fixture
def app(settings, bot, provisioner, timers):
    bot_app = BotApp(
        settings,
        bot=bot,
        provisioner=provisioner,
        payments=PakasirClient("", ""),
        sessions=SessionStore(timer_factory=timers),
    )
    bot_app.broadcast_delay = 0
    yield bot_app
    bot_app.close()


@pytest.fixture
def make_user():
    def _make(database, user_id, saldo=0, role="user", level="silver", username=None):
        with database.transaction() as cur:
            cur.execute(
                "INSERT INTO users (user_id, username, saldo, role, reseller_level) VALUES (?, ?, ?, ?, ?)",
                (user_id, username or f"user{user_id}", saldo, role, level),
            )
        return user_id

    return _make


@pytest.fixture
def make_server():
    def _make(database, **overrides):
        values = {
            "domain": "sg1.example.com",
            "auth": "secret",
            "nama_server": "SG 1",
            "quota": 100,
            "iplimit": 2,
            "batas_create_akun": 50,
            "harga": 1000,
            "lokasi": "Singapore",
        }
        values.update(overrides)
        with database.transaction() as cur:
            cur.execute(
                "INSERT INTO servers (domain, auth, nama_server, quota, iplimit, batas_create_akun, harga, lokasi, total_create_akun)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    values["domain"],
                    values["auth"],
                    values["nama_server"],
                    values["quota"],
                    values["iplimit"],
                    values["batas_create_akun"],
                    values["harga"],
                    values["lokasi"],
                    values.get("total_create_akun", 0),
                ),
            )
            return int(cur.lastrowid)

    return _make


def text_update(chat_id, text):
    return {
        "update_id": 1,
        "message": {"message_id": 1, "chat": {"id": chat_id}, "from": {"id": chat_id, "username": f"user{chat_id}"}, "text": text},
    }


def callback_update(chat_id, data, message_text="", message_id=10):
    return {
        "update_id": 1,
        "callback_query": {
            "id": "cb1",
            "from": {"id": chat_id, "username": f"user{chat_id}"},
            "data": data,
            "message": {"message_id": message_id, "chat": {"id": chat_id}, "text": message_text},
        },
    }


@pytest.fixture
def text():
    return text_update


@pytest.fixture
def press():
    return callback_update


@pytest.fixture
def make_provisioner():
    return FakeProvisioner
