"""High level bot application logic.

``BotApp`` polls Telegram for updates and routes them. Button presses are
matched in :meth:`BotApp._route_callback`; free text, photos and documents
are only meaningful inside a conversation and are routed through the chat's
session by a :class:`~vpn_store.flows.Dispatcher`.
"""
from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple

from . import backup, deposits, keypad, pricing, purchases, repository, trials
from .config import Settings
from .database import Database
from .flows import ADD_SERVER_PHASES, Dispatcher, FlowKind, Phase
from .formatting import (
    account_details_text,
    format_currency,
    invoice_text,
    server_button_label,
    trial_details_text,
    trial_notice_text,
)
from .payments import PakasirClient, PakasirError
from .provisioning import ACTION_TRIAL, PROTOCOLS, ProtocolProvisioner, SSHScriptProvisioner
from .security import (
    parse_level_change,
    sanitize_string,
    secure_filename,
    validate_account_password,
    validate_account_username,
    validate_domain,
    validate_int,
    validate_price,
    validate_user_id,
)
from .sessions import Session, SessionStore
from .telegram import TelegramAPIError, TelegramBot

LOGGER = logging.getLogger(__name__)

SERVICE_TIMEOUT = 600
KEYPAD_TIMEOUT = 300
ADMIN_INPUT_TIMEOUT = 30
PROOF_UPLOAD_TIMEOUT = 300
BROADCAST_TIMEOUT = 120
RESTORE_UPLOAD_TIMEOUT = 30
SERVER_SETUP_TIMEOUT = 600

PROTOCOLS_BY_ACTION = {
    purchases.ACTION_CREATE: PROTOCOLS + (pricing.BUNDLE_PROTOCOL,),
    purchases.ACTION_RENEW: PROTOCOLS + (pricing.BUNDLE_PROTOCOL,),
    ACTION_TRIAL: trials.TRIAL_PROTOCOLS,
}

SERVER_PICK_RE = re.compile(r"^(create|renew|trial)_server_([a-z0-9]+)_(\d+)$")
PROTOCOL_PICK_RE = re.compile(r"^(create|renew|trial)_([a-z0-9]+)$")
DURATION_RE = re.compile(r"^duration_(create|renew)_([a-z0-9]+)_(\d+)_(\d+)$")
ORDER_RE = re.compile(r"^(pay|cancel)_(create|renew)_([a-z0-9]+)_(\d+)_(\d+)$")
EDIT_FIELD_RE = re.compile(r"^edit_(harga|quota|limit_ip|batas_create_akun|nama|auth|domain)_(\d+)$")
DEPOSIT_ACTION_RE = re.compile(r"^(upload_proof|check_payment|cancel_payment|approve_deposit|reject_deposit|view_deposit)_(.+)$")
BACKUP_ACTION_RE = re.compile(r"^(restore_file|confirm_restore|delete_file|confirm_delete)::(.+)$")
ACCOUNT_ACTION_RE = re.compile(r"^akunku_(view|delete|confirm_delete)_(\d+)$")
RESELLER_TOP_RE = re.compile(r"^reseller_top_(all|weekly)$")

# Shown lists are cut at these sizes.
MY_ACCOUNTS_SHOWN = 10
USER_LIST_SHOWN = 20

# Keypad fields for the numeric server edits, keyed by callback name.
NUMBER_EDITS = {"harga": "harga", "quota": "quota", "limit_ip": "iplimit", "batas_create_akun": "batas_create_akun"}
# Column behind each text edit.
TEXT_EDITS = {"nama": "nama_server", "auth": "auth", "domain": "domain"}

ADD_SERVER_PROMPTS = {
    Phase.DOMAIN: "🌐 Masukkan domain server:",
    Phase.AUTH: "🔑 Masukkan password root server:",
    Phase.NAME: "🏷 Masukkan nama server:",
    Phase.QUOTA: "📊 Masukkan quota (GB):",
    Phase.IP_LIMIT: "🔢 Masukkan limit IP:",
    Phase.ACCOUNT_LIMIT: "👥 Masukkan batas create akun:",
    Phase.PRICE: "💰 Masukkan harga per hari:",
}
ADD_SERVER_KEYS = {
    Phase.DOMAIN: "domain",
    Phase.AUTH: "auth",
    Phase.NAME: "nama_server",
    Phase.QUOTA: "quota",
    Phase.IP_LIMIT: "iplimit",
    Phase.ACCOUNT_LIMIT: "batas_create_akun",
    Phase.PRICE: "harga",
}

PROTOCOL_MENU_TITLES = {
    purchases.ACTION_CREATE: "➕ Pilih jenis akun yang ingin dibuat:",
    purchases.ACTION_RENEW: "♻️ Pilih jenis akun yang ingin diperpanjang:",
    ACTION_TRIAL: "🎁 Pilih jenis akun trial (aktif 60 menit):",
}

GENERIC_FAILURE = "❌ Terjadi kesalahan saat memproses permintaan. Silakan coba lagi nanti."
DENIED = "⛔ Anda tidak memiliki izin untuk melakukan tindakan ini."


def _button(text: str, data: str) -> Dict[str, str]:
    return {"text": text, "callback_data": data}


def _chat_of(update: Dict) -> Optional[int]:
    if "message" in update:
        return update["message"]["chat"]["id"]
    if "callback_query" in update:
        return update["callback_query"]["message"]["chat"]["id"]
    return None


class BotApp:
    """Telegram bot that sells VPN accounts.

    Updates are handled on a worker pool, in order within each chat.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        bot: Optional[TelegramBot] = None,
        provisioner: Optional[ProtocolProvisioner] = None,
        payments: Optional[PakasirClient] = None,
        sessions: Optional[SessionStore] = None,
    ) -> None:
        self.settings = settings
        self.db = Database(settings.database_path)
        self.bot = bot or TelegramBot(settings.bot_token)
        self.provisioner = provisioner or SSHScriptProvisioner(
            settings.provision_script_dir, timeout=settings.provision_timeout
        )
        self.payments = payments or PakasirClient(settings.pakasir_project, settings.pakasir_api_key)
        self.sessions = sessions or SessionStore()
        self.executor = ThreadPoolExecutor(max_workers=settings.workers, thread_name_prefix="update")
        self._pending: Dict[Optional[int], Deque[Dict]] = {}
        self._pending_guard = threading.Lock()
        self.broadcast_delay = 0.05
        self.text_flows = Dispatcher()
        self.media_flows = Dispatcher()
        self._register_flows()

    def _register_flows(self) -> None:
        text = self.text_flows.register
        text(FlowKind.SERVICE, Phase.USERNAME, self._handle_service_username)
        text(FlowKind.SERVICE, Phase.PASSWORD, self._handle_service_password)
        text(FlowKind.ADD_SERVER, None, self._handle_add_server)
        text(FlowKind.EDIT_SERVER_TEXT, Phase.TEXT, self._handle_edit_server_text)
        text(FlowKind.ADD_BALANCE, Phase.TEXT, self._handle_add_balance_target)
        text(FlowKind.PROMOTE_RESELLER, Phase.TEXT, self._handle_promote)
        text(FlowKind.DOWNGRADE_RESELLER, Phase.TEXT, self._handle_downgrade)
        text(FlowKind.LEVEL_CHANGE, Phase.TEXT, self._handle_level_change)
        text(FlowKind.RESET_COMMISSION, Phase.TEXT, self._handle_reset_commission)
        text(FlowKind.BROADCAST, Phase.TEXT, self._handle_broadcast)
        media = self.media_flows.register
        media(FlowKind.DEPOSIT, Phase.PROOF_UPLOAD, self._handle_payment_proof)
        media(FlowKind.RESTORE_UPLOAD, Phase.DOCUMENT, self._handle_restore_upload)

    # ------------------------------------------------------------------
    # main loop
    # ------------------------------------------------------------------
    def run(self) -> None:  # pragma: no cover - infinite loop
        LOGGER.info("bot started with %s workers", self.settings.workers)
        offset: Optional[int] = None
        while True:
            try:
                updates = self.bot.get_updates(offset=offset, timeout=25)
            except Exception as exc:  # pragma: no cover - network error
                LOGGER.error("failed to fetch updates: %s", exc)
                time.sleep(self.settings.poll_interval)
                continue
            for update in updates:
                offset = update["update_id"] + 1
                self.submit_update(update)
            time.sleep(self.settings.poll_interval)

    def submit_update(self, update: Dict) -> Optional[Future]:
        """Queue ``update`` behind earlier updates from the same chat.

        Each chat is drained by at most one worker at a time, so a chat sees
        its updates in arrival order while other chats proceed in parallel.
        Returns the drain task when this update started one.
        """
        chat_id = _chat_of(update)
        with self._pending_guard:
            queue = self._pending.get(chat_id)
            if queue is not None:
                queue.append(update)
                return None
            self._pending[chat_id] = deque([update])
        return self.executor.submit(self._drain, chat_id)

    def _drain(self, chat_id: Optional[int]) -> None:
        while True:
            with self._pending_guard:
                queue = self._pending[chat_id]
                if not queue:
                    del self._pending[chat_id]
                    return
                update = queue.popleft()
            try:
                self.process_update(update)
            except Exception as exc:
                LOGGER.exception("unhandled error while processing update: %s", exc)

    def close(self) -> None:
        self.executor.shutdown(wait=True)
        self.db.close()

    def process_update(self, update: Dict) -> None:
        if "message" in update:
            chat_id = update["message"]["chat"]["id"]
            with self.sessions.lock(chat_id):
                self._handle_message(update["message"])
        elif "callback_query" in update:
            callback = update["callback_query"]
            chat_id = callback["message"]["chat"]["id"]
            with self.sessions.lock(chat_id):
                self._handle_callback(callback)

    # ------------------------------------------------------------------
    def _handle_message(self, message: Dict) -> None:
        chat_id = message["chat"]["id"]
        text = message.get("text")
        self._ensure_user(message)
        if text and text.startswith(("/start", "/menu")):
            self.sessions.delete(chat_id)
            self._send_main_menu(chat_id)
            return
        if text and text.startswith("/admin"):
            if self._is_admin(chat_id):
                self._send_admin_menu(chat_id)
            else:
                self._reply(chat_id, DENIED)
            return
        session = self.sessions.get(chat_id)
        if message.get("photo") or message.get("document"):
            # Uploads outside their flow are ignored.
            self.media_flows.dispatch(chat_id, message, session)
            return
        if text is None:
            return
        if not self.text_flows.dispatch(chat_id, message, session):
            self._send_main_menu(chat_id)

    # ------------------------------------------------------------------
    def _handle_callback(self, callback: Dict) -> None:
        chat_id = callback["message"]["chat"]["id"]
        data = callback.get("data", "")
        sender = callback.get("from", {})
        repository.ensure_user(self.db, chat_id, sender.get("username"), sender.get("first_name"))
        alert: Optional[str] = None
        try:
            alert = self._route_callback(chat_id, data, callback)
        finally:
            try:
                self.bot.answer_callback_query(callback["id"], text=alert, show_alert=bool(alert))
            except TelegramAPIError as exc:
                LOGGER.warning("could not answer callback %s: %s", data, exc)

    def _route_callback(self, chat_id: int, data: str, callback: Dict) -> Optional[str]:
        """Run the action behind a button; return an alert text to pop up, if any."""

        if data in ("main_menu", "send_main_menu"):
            self._send_main_menu(chat_id)
        elif data == "cek_saldo":
            self._show_balance(chat_id)
        elif data in ("service_create", "service_renew", "service_trial"):
            self._show_protocol_menu(chat_id, data.split("_", 1)[1])
        elif SERVER_PICK_RE.match(data):
            action, protocol, server_id = SERVER_PICK_RE.match(data).groups()
            if action == ACTION_TRIAL:
                self._start_trial(chat_id, protocol, int(server_id))
            else:
                self._start_service(chat_id, action, protocol, int(server_id))
        elif DURATION_RE.match(data):
            action, protocol, server_id, days = DURATION_RE.match(data).groups()
            self._choose_duration(chat_id, action, protocol, int(server_id), int(days))
        elif ORDER_RE.match(data):
            verb, action, protocol, server_id, days = ORDER_RE.match(data).groups()
            if verb == "pay":
                self._pay(chat_id, action, protocol, int(server_id), int(days))
            else:
                self.sessions.delete(chat_id)
                self._reply(chat_id, "❌ Pembelian dibatalkan.")
        elif data.startswith("num_"):
            return self._handle_keypad(chat_id, data, callback)
        elif data in ("deposit", "topup_saldo"):
            self._start_deposit(chat_id)
        elif DEPOSIT_ACTION_RE.match(data):
            verb, code = DEPOSIT_ACTION_RE.match(data).groups()
            return self._route_deposit_action(chat_id, verb, code)
        elif data == "upgrade_to_reseller":
            self._show_upgrade_offer(chat_id)
        elif data == "confirm_upgrade_reseller":
            self._upgrade_to_reseller(chat_id)
        elif data == "akunku":
            self._show_my_accounts(chat_id)
        elif ACCOUNT_ACTION_RE.match(data):
            verb, account_id = ACCOUNT_ACTION_RE.match(data).groups()
            self._route_account_action(chat_id, verb, int(account_id))
        elif data in ("menu_reseller", "reseller_komisi", "reseller_riwayat") or RESELLER_TOP_RE.match(data):
            self._route_reseller_report(chat_id, data)
        elif PROTOCOL_PICK_RE.match(data):
            action, protocol = PROTOCOL_PICK_RE.match(data).groups()
            self._show_server_menu(chat_id, action, protocol)
        else:
            return self._route_admin_callback(chat_id, data)
        return None

    def _route_admin_callback(self, chat_id: int, data: str) -> Optional[str]:
        if not self._is_admin(chat_id):
            self._reply(chat_id, DENIED)
            return None
        if data == "admin_menu":
            self._send_admin_menu(chat_id)
        elif data == "admin_stats":
            self._show_stats(chat_id)
        elif data == "admin_listuser":
            self._list_users(chat_id, None)
        elif data == "admin_listreseller":
            self._list_users(chat_id, pricing.ROLE_RESELLER)
        elif data == "admin_pending_deposits":
            self._list_pending_deposits(chat_id)
        elif data == "admin_view_topup":
            self._list_topups(chat_id)
        elif data == "admin_reset_trial":
            count = trials.reset_trials(self.db)
            self._reply(chat_id, f"✅ Kuota trial harian direset untuk {count} pengguna.")
        elif data == "addserver":
            self._prompt_add_server(chat_id)
        elif data == "listserver":
            self._list_servers(chat_id)
        elif data.startswith("editserver_"):
            self._show_server_edit_menu(chat_id, int(data.rsplit("_", 1)[1]))
        elif EDIT_FIELD_RE.match(data):
            field, server_id = EDIT_FIELD_RE.match(data).groups()
            self._prompt_server_edit(chat_id, field, int(server_id))
        elif data.startswith("deleteserver_"):
            self._confirm_delete_server(chat_id, int(data.rsplit("_", 1)[1]))
        elif data.startswith("confirm_deleteserver_"):
            self._delete_server(chat_id, int(data.rsplit("_", 1)[1]))
        elif data == "admin_add_saldo":
            self._prompt_admin_input(chat_id, FlowKind.ADD_BALANCE, "👤 Masukkan ID pengguna yang akan ditambah saldonya:")
        elif data == "admin_promote":
            self._prompt_admin_input(chat_id, FlowKind.PROMOTE_RESELLER, "👤 Masukkan ID pengguna yang akan dijadikan reseller:")
        elif data == "admin_downgrade":
            self._prompt_admin_input(chat_id, FlowKind.DOWNGRADE_RESELLER, "👤 Masukkan ID reseller yang akan diturunkan:")
        elif data == "admin_change_level":
            self._prompt_admin_input(chat_id, FlowKind.LEVEL_CHANGE, "🔄 Kirim dengan format: `ID LEVEL` (silver/gold/platinum)")
        elif data == "admin_reset_komisi":
            self._prompt_admin_input(chat_id, FlowKind.RESET_COMMISSION, "🧹 Masukkan ID reseller yang komisinya akan direset:")
        elif data == "admin_broadcast":
            self._begin(chat_id, FlowKind.BROADCAST, Phase.TEXT, BROADCAST_TIMEOUT, notify="⏰ Waktu broadcast habis.")
            self._reply(chat_id, "📢 Kirim pesan yang akan dibroadcast ke semua pengguna:")
        elif data == "backup_db":
            self._send_backup(chat_id)
        elif data == "list_backups":
            self._list_backups(chat_id)
        elif BACKUP_ACTION_RE.match(data):
            verb, name = BACKUP_ACTION_RE.match(data).groups()
            self._route_backup_action(chat_id, verb, name)
        elif data == "restore_upload":
            self._begin(chat_id, FlowKind.RESTORE_UPLOAD, Phase.DOCUMENT, RESTORE_UPLOAD_TIMEOUT, notify="⏰ Waktu upload restore habis.")
            self._reply(chat_id, "📤 Kirim file database (.db) yang akan direstore:")
        else:
            self._send_main_menu(chat_id)
        return None

    # ------------------------------------------------------------------
    # users and menus
    # ------------------------------------------------------------------
    def _ensure_user(self, message: Dict) -> Dict:
        chat = message["chat"]
        sender = message.get("from", {})
        return repository.ensure_user(
            self.db,
            chat["id"],
            sender.get("username") or chat.get("username"),
            sender.get("first_name") or chat.get("first_name"),
        )

    def _is_admin(self, chat_id: int) -> bool:
        return chat_id in self.settings.admin_ids or repository.has_admin_role(self.db, chat_id)

    def _reply(self, chat_id: Any, text: str, **kwargs: Any) -> Optional[Dict]:
        try:
            return self.bot.send_message(chat_id, text, **kwargs)
        except TelegramAPIError as exc:
            LOGGER.warning("failed to send message to %s: %s", chat_id, exc)
            return None

    def _notify_group(self, text: str, **kwargs: Any) -> None:
        if self.settings.group_id:
            self._reply(self.settings.group_id, text, **kwargs)

    def _send_main_menu(self, chat_id: int) -> None:
        user = repository.get_user(self.db, chat_id) or {}
        rows = [
            [_button("➕ Buat Akun", "service_create"), _button("♻️ Perpanjang Akun", "service_renew")],
            [_button("💰 Top Up Saldo", "deposit"), _button("💳 Cek Saldo", "cek_saldo")],
            [_button("🎁 Trial Gratis", "service_trial"), _button("📂 Akunku", "akunku")],
        ]
        if user.get("role") == repository.ROLE_USER:
            rows.append([_button("⬆️ Upgrade ke Reseller", "upgrade_to_reseller")])
        elif user.get("role") == pricing.ROLE_RESELLER:
            rows.append([_button("💼 Menu Reseller", "menu_reseller")])
        if self._is_admin(chat_id):
            rows.append([_button("🛠 Menu Admin", "admin_menu")])
        text = (
            f"Selamat datang di {self.settings.store_name}!\n\n"
            f"💳 Saldo: {format_currency(user.get('saldo', 0))}\n"
            f"👤 Role: {user.get('role', repository.ROLE_USER)}"
        )
        if user.get("role") == pricing.ROLE_RESELLER:
            text += f"\n🏅 Level: {user.get('reseller_level')}"
        self._reply(chat_id, text, reply_markup={"inline_keyboard": rows})

    def _send_admin_menu(self, chat_id: int) -> None:
        rows = [
            [_button("➕ Tambah Server", "addserver"), _button("📋 Daftar Server", "listserver")],
            [_button("📊 Statistik", "admin_stats"), _button("🧾 Deposit Pending", "admin_pending_deposits")],
            [_button("👥 Daftar User", "admin_listuser"), _button("💼 Daftar Reseller", "admin_listreseller")],
            [_button("📜 Riwayat Top Up", "admin_view_topup"), _button("🎁 Reset Trial", "admin_reset_trial")],
            [_button("💵 Tambah Saldo", "admin_add_saldo"), _button("📢 Broadcast", "admin_broadcast")],
            [_button("⬆️ Promote Reseller", "admin_promote"), _button("⬇️ Downgrade Reseller", "admin_downgrade")],
            [_button("🔄 Ubah Level", "admin_change_level"), _button("🧹 Reset Komisi", "admin_reset_komisi")],
            [_button("💾 Backup", "backup_db"), _button("🗂 Daftar Backup", "list_backups")],
            [_button("📤 Restore dari File", "restore_upload")],
            [_button("🔙 Menu Utama", "main_menu")],
        ]
        self._reply(chat_id, "🛠 Menu Admin", reply_markup={"inline_keyboard": rows})

    def _show_balance(self, chat_id: int) -> None:
        user = repository.get_user(self.db, chat_id) or {}
        self._reply(chat_id, f"💳 Saldo Anda: {format_currency(user.get('saldo', 0))}")

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def _begin(self, chat_id: int, flow: FlowKind, phase: Phase, timeout: float, *, notify: Optional[str] = None, **data: Any) -> Session:
        session = self.sessions.start(chat_id, flow, phase, **data)

        def _notify(expired_chat: int, _session: Session) -> None:
            self._reply(expired_chat, notify)

        self.sessions.expire_after(chat_id, timeout, _notify if notify else None)
        return session

    def _session_expired(self, chat_id: int) -> None:
        self._reply(chat_id, "⚠️ Sesi sudah berakhir. Silakan mulai lagi dari menu.")

    # ------------------------------------------------------------------
    # service creation / renewal
    # ------------------------------------------------------------------
    def _show_protocol_menu(self, chat_id: int, action: str) -> None:
        protocols = PROTOCOLS_BY_ACTION.get(action, ())
        buttons = [_button(p.upper(), f"{action}_{p}") for p in protocols]
        rows = [buttons[i:i + 2] for i in range(0, len(buttons), 2)]
        rows.append([_button("🔙 Kembali", "main_menu")])
        title = PROTOCOL_MENU_TITLES.get(action, PROTOCOL_MENU_TITLES[purchases.ACTION_CREATE])
        self._reply(chat_id, title, reply_markup={"inline_keyboard": rows})

    def _show_server_menu(self, chat_id: int, action: str, protocol: str) -> None:
        if protocol not in PROTOCOLS_BY_ACTION.get(action, ()):
            self._send_main_menu(chat_id)
            return
        servers = repository.list_servers(self.db)
        if not servers:
            self._reply(chat_id, "⚠️ Belum ada server yang tersedia.")
            return
        rows = []
        for server in servers:
            label = server_button_label(server)
            if action == purchases.ACTION_CREATE and repository.server_is_full(server):
                label += " ⚠️ Penuh"
            rows.append([_button(label, f"{action}_server_{protocol}_{server['id']}")])
        rows.append([_button("🔙 Kembali", f"service_{action}")])
        self._reply(chat_id, "🖥 Pilih server:", reply_markup={"inline_keyboard": rows})

    def _start_service(self, chat_id: int, action: str, protocol: str, server_id: int) -> None:
        if protocol not in PROTOCOLS_BY_ACTION.get(action, ()):
            self._send_main_menu(chat_id)
            return
        server = repository.get_server(self.db, server_id)
        if not server:
            self._reply(chat_id, "❌ Server tidak ditemukan.")
            return
        if action == purchases.ACTION_CREATE and repository.server_is_full(server):
            self._reply(chat_id, "⚠️ Server penuh. Silakan pilih server lain.")
            return
        self._begin(
            chat_id,
            FlowKind.SERVICE,
            Phase.USERNAME,
            SERVICE_TIMEOUT,
            action=action,
            protocol=protocol,
            server_id=server_id,
            server_name=server["nama_server"],
            harga=server["harga"],
        )
        self._reply(chat_id, "👤 Masukkan username (3-20 karakter, huruf, angka atau _):")

    def _handle_service_username(self, chat_id: int, message: Dict, session: Session) -> None:
        username = sanitize_string(message.get("text", ""))
        if not validate_account_username(username):
            self._reply(chat_id, "❌ Username tidak valid. Gunakan 3-20 karakter huruf, angka atau _.")
            return
        error = purchases.check_username(self.db, session.data["action"], session.data["protocol"], username)
        if error:
            self._reply(chat_id, error)
            return
        if session.data["action"] == purchases.ACTION_CREATE and session.data["protocol"] == "ssh":
            self.sessions.advance(chat_id, Phase.PASSWORD, username=username)
            self._reply(chat_id, "🔑 Masukkan password (minimal 6 karakter, huruf atau angka):")
            return
        self.sessions.advance(chat_id, Phase.DURATION, username=username)
        self._after_credentials(chat_id)

    def _handle_service_password(self, chat_id: int, message: Dict, session: Session) -> None:
        password = sanitize_string(message.get("text", ""))
        if not validate_account_password(password):
            self._reply(chat_id, "❌ Password tidak valid. Minimal 6 karakter huruf atau angka.")
            return
        self.sessions.advance(chat_id, Phase.DURATION, password=password)
        self._after_credentials(chat_id)

    def _after_credentials(self, chat_id: int) -> None:
        session = self.sessions.get(chat_id)
        if session is None:
            return
        data = session.data
        if data.get("days"):
            # Duration survives a username retry.
            self._show_confirmation(chat_id, int(data["days"]))
            return
        self._show_duration_menu(chat_id, data["action"], data["protocol"], data["server_id"])

    def _show_duration_menu(self, chat_id: int, action: str, protocol: str, server_id: int) -> None:
        buttons = [_button(f"{d} Hari", f"duration_{action}_{protocol}_{server_id}_{d}") for d in pricing.DURATIONS]
        rows = [buttons[i:i + 3] for i in range(0, len(buttons), 3)]
        self._reply(chat_id, "🗓 Pilih masa aktif:", reply_markup={"inline_keyboard": rows})

    def _matching_service(self, chat_id: int, action: str, protocol: str, server_id: int, phases: Tuple[Phase, ...]) -> Optional[Session]:
        session = self.sessions.get(chat_id)
        if session is None or session.flow is not FlowKind.SERVICE or session.phase not in phases:
            return None
        data = session.data
        if data.get("action") != action or data.get("protocol") != protocol or data.get("server_id") != server_id:
            return None
        return session

    def _stale_service_button(self, chat_id: int, action: str, protocol: str, server_id: int) -> None:
        # An older keyboard pressed while the same order waits for a new username.
        if self._matching_service(chat_id, action, protocol, server_id, (Phase.USERNAME, Phase.PASSWORD)) is not None:
            self._reply(chat_id, "⚠️ Masukkan username baru terlebih dahulu.")
            return
        self._session_expired(chat_id)

    def _choose_duration(self, chat_id: int, action: str, protocol: str, server_id: int, days: int) -> None:
        session = self._matching_service(chat_id, action, protocol, server_id, (Phase.DURATION, Phase.CONFIRM))
        if session is None:
            self._stale_service_button(chat_id, action, protocol, server_id)
            return
        if days not in pricing.DURATIONS:
            self._reply(chat_id, "❌ Masa aktif tidak valid.")
            return
        self._show_confirmation(chat_id, days)

    def _show_confirmation(self, chat_id: int, days: int) -> None:
        session = self.sessions.advance(chat_id, Phase.CONFIRM, days=days)
        if session is None:
            self._session_expired(chat_id)
            return
        data = session.data
        buyer, server, quote = purchases.quote_for(self.db, chat_id, data["server_id"], data["protocol"], days)
        if quote is None:
            self.sessions.delete(chat_id)
            self._reply(chat_id, "❌ Server tidak ditemukan.")
            return
        saldo = int(buyer.get("saldo") or 0)
        summary = (
            "🧾 Konfirmasi Pembelian\n\n"
            f"📦 Layanan: {data['action'].upper()} {data['protocol'].upper()}\n"
            f"👤 Username: {data['username']}\n"
            f"🖥 Server: {server['nama_server']}\n"
            f"🗓 Masa aktif: {days} Hari\n"
            f"💰 Total: {format_currency(quote.total)}\n"
            f"💳 Saldo: {format_currency(saldo)}"
        )
        if saldo < quote.total:
            self._reply(
                chat_id,
                summary + "\n\n❌ Saldo tidak cukup.",
                reply_markup={"inline_keyboard": [[_button("💰 Top Up", "deposit")]]},
            )
            return
        suffix = f"{data['action']}_{data['protocol']}_{data['server_id']}_{days}"
        self._reply(
            chat_id,
            summary,
            reply_markup={"inline_keyboard": [[_button("✅ Bayar", f"pay_{suffix}"), _button("❌ Batal", f"cancel_{suffix}")]]},
        )

    def _pay(self, chat_id: int, action: str, protocol: str, server_id: int, days: int) -> None:
        session = self._matching_service(chat_id, action, protocol, server_id, (Phase.CONFIRM,))
        if session is None or session.data.get("days") != days or not session.data.get("username"):
            self._stale_service_button(chat_id, action, protocol, server_id)
            return
        request = purchases.PurchaseRequest(
            buyer_id=chat_id,
            action=action,
            protocol=protocol,
            username=session.data["username"],
            days=days,
            server_id=server_id,
            password=session.data.get("password"),
        )
        self._reply(chat_id, "⏳ Sedang memproses akun Anda...")
        try:
            outcome = purchases.commit_purchase(self.db, self.provisioner, request)
        except Exception as exc:
            LOGGER.exception("purchase for %s failed: %s", chat_id, exc)
            self.sessions.delete(chat_id)
            self._reply(chat_id, GENERIC_FAILURE)
            return

        if outcome.status == purchases.STATUS_INSUFFICIENT:
            self._reply(
                chat_id,
                f"❌ Saldo tidak cukup. Total {format_currency(outcome.quote.total)}, saldo {format_currency(outcome.balance)}.",
                reply_markup={"inline_keyboard": [[_button("💰 Top Up", "deposit")]]},
            )
            return
        if outcome.status == purchases.STATUS_DUPLICATE:
            self._retry_username(chat_id)
            return
        if outcome.status != purchases.STATUS_OK:
            self.sessions.delete(chat_id)
            if outcome.status == purchases.STATUS_SERVER_FULL:
                self._reply(chat_id, "⚠️ Server penuh. Silakan pilih server lain.")
            elif outcome.status == purchases.STATUS_NOT_FOUND:
                self._reply(chat_id, "❌ Server tidak ditemukan.")
            else:
                self._reply(chat_id, f"❌ Gagal memproses akun: {outcome.error}. Saldo Anda tidak terpotong.")
            return

        self.sessions.delete(chat_id)
        self._deliver_purchase(chat_id, request, outcome)

    def _retry_username(self, chat_id: int) -> None:
        def _reset(session: Session) -> Session:
            session.phase = Phase.USERNAME
            session.data.pop("username", None)
            session.data.pop("password", None)
            return session

        self.sessions.update(chat_id, _reset)
        self._reply(chat_id, "❌ Username sudah digunakan. Silakan masukkan username lain:")

    def _deliver_purchase(self, chat_id: int, request: purchases.PurchaseRequest, outcome: purchases.PurchaseOutcome) -> None:
        result = outcome.result
        self._reply(
            chat_id,
            account_details_text(
                protocol=request.protocol,
                action=request.action,
                username=result.username,
                server_name=outcome.server["nama_server"],
                days=request.days,
                total=outcome.quote.total,
                expires_at=result.expires_at,
                details=result.details,
            ),
            parse_mode="MarkdownV2",
        )
        self._notify_group(
            invoice_text(
                buyer=outcome.buyer,
                action=request.action,
                protocol=request.protocol,
                username=request.username,
                server_name=outcome.server["nama_server"],
                days=request.days,
                total=outcome.quote.total,
                commission=outcome.quote.commission,
            ),
            parse_mode="MarkdownV2",
        )
        if outcome.level_change:
            old, new = outcome.level_change
            direction = "Naik" if pricing.level_priority(new) > pricing.level_priority(old) else "Turun"
            who = f"@{outcome.buyer['username']}" if outcome.buyer.get("username") else str(chat_id)
            self._notify_group(f"🏅 Level {direction}: {who} {old.upper()} → {new.upper()}")
            self._reply(chat_id, f"🏅 Level reseller Anda sekarang {new.upper()}.")

    # ------------------------------------------------------------------
    # trials
    # ------------------------------------------------------------------
    def _start_trial(self, chat_id: int, protocol: str, server_id: int) -> None:
        if protocol not in trials.TRIAL_PROTOCOLS:
            self._send_main_menu(chat_id)
            return
        self._reply(chat_id, "⏳ Sedang membuat akun trial... Mohon tunggu.")
        try:
            outcome = trials.commit_trial(
                self.db,
                self.provisioner,
                chat_id,
                protocol,
                server_id,
                unlimited=chat_id in self.settings.admin_ids,
            )
        except Exception as exc:
            LOGGER.exception("trial for %s failed: %s", chat_id, exc)
            self._reply(chat_id, "❌ Terjadi kesalahan saat membuat akun trial.")
            return

        if outcome.status == trials.STATUS_LIMIT:
            self._reply(chat_id, f"😅 Batas trial harian sudah tercapai.\nKamu hanya bisa ambil {outcome.limit}x per hari.")
            return
        if outcome.status == trials.STATUS_NOT_FOUND:
            self._reply(chat_id, "❌ Server tidak ditemukan.")
            return
        if not outcome.ok:
            self._reply(chat_id, f"❌ Gagal membuat akun trial: {outcome.error}")
            return

        result = outcome.result
        self._reply(
            chat_id,
            trial_details_text(
                protocol=protocol,
                username=result.username,
                server_name=outcome.server["nama_server"],
                minutes=trials.TRIAL_MINUTES,
                expires_at=result.expires_at,
                details=result.details,
            ),
            parse_mode="MarkdownV2",
        )
        self._notify_group(
            trial_notice_text(
                user=repository.get_user(self.db, chat_id) or {"user_id": chat_id},
                protocol=protocol,
                server_name=outcome.server["nama_server"],
                role=outcome.role,
                count=outcome.count,
                limit=outcome.limit,
                minutes=trials.TRIAL_MINUTES,
            ),
            parse_mode="MarkdownV2",
        )

    # ------------------------------------------------------------------
    # my accounts
    # ------------------------------------------------------------------
    def _show_my_accounts(self, chat_id: int) -> None:
        owner = None if self._is_admin(chat_id) else chat_id
        accounts = repository.list_accounts(self.db, owner)
        if not accounts:
            self._reply(
                chat_id,
                "📂 Belum ada akun aktif.",
                reply_markup={"inline_keyboard": [[_button("➕ Buat Akun", "service_create"), _button("🔙 Menu Utama", "main_menu")]]},
            )
            return
        shown = accounts[:MY_ACCOUNTS_SHOWN]
        lines = ["📂 Akun Aktif", ""]
        rows = []
        for account in shown:
            lines.append(f"#{account['id']} {account['protocol'].upper()} {account['username']} @ {account['server']}")
            lines.append(f"   ⏰ {account['expired_at'] or '-'}")
            rows.append([_button(f"🔍 {account['username']} ({account['protocol']})", f"akunku_view_{account['id']}")])
        if len(accounts) > len(shown):
            lines.append(f"\n... dan {len(accounts) - len(shown)} akun lainnya.")
        rows.append([_button("💰 Top Up Saldo", "topup_saldo"), _button("🔙 Menu Utama", "main_menu")])
        self._reply(chat_id, "\n".join(lines), reply_markup={"inline_keyboard": rows})

    def _route_account_action(self, chat_id: int, verb: str, account_id: int) -> None:
        account = repository.get_account(self.db, account_id)
        if not account:
            self._reply(chat_id, "❌ Akun tidak ditemukan.")
            return
        if account["owner_user_id"] != chat_id and not self._is_admin(chat_id):
            self._reply(chat_id, DENIED)
            return
        if verb == "view":
            lines = [
                f"🔍 Detail Akun #{account['id']}",
                "",
                f"👤 Username: {account['username']}",
                f"📦 Protokol: {account['protocol'].upper()}",
                f"🖥 Server: {account['server']}",
                f"⏰ Expired: {account['expired_at'] or '-'}",
                f"📌 Status: {account['status']}",
            ]
            rows = [[_button("🗑 Hapus", f"akunku_delete_{account_id}"), _button("🔙 Kembali", "akunku")]]
            self._reply(chat_id, "\n".join(lines), reply_markup={"inline_keyboard": rows})
        elif verb == "delete":
            rows = [[_button("✅ Ya, Hapus", f"akunku_confirm_delete_{account_id}"), _button("❌ Batal", "akunku")]]
            self._reply(chat_id, f"⚠️ Hapus akun {account['username']} dari daftar?", reply_markup={"inline_keyboard": rows})
        else:
            repository.delete_accounts(self.db, [account])
            LOGGER.info("account %s (%s) removed by %s", account_id, account["username"], chat_id)
            self._reply(chat_id, f"✅ Akun {account['username']} dihapus dari daftar.")

    # ------------------------------------------------------------------
    # reseller reports
    # ------------------------------------------------------------------
    def _route_reseller_report(self, chat_id: int, data: str) -> None:
        user = repository.get_user(self.db, chat_id) or {}
        if user.get("role") != pricing.ROLE_RESELLER and not self._is_admin(chat_id):
            self._reply(chat_id, "⛔ Menu ini khusus reseller.")
            return
        if data == "menu_reseller":
            rows = [
                [_button("💰 Komisi", "reseller_komisi"), _button("📜 Riwayat", "reseller_riwayat")],
                [_button("🏆 Top Reseller", "reseller_top_all"), _button("📅 Top Mingguan", "reseller_top_weekly")],
                [_button("🔙 Menu Utama", "main_menu")],
            ]
            self._reply(chat_id, f"💼 Menu Reseller\n🏅 Level: {user.get('reseller_level')}", reply_markup={"inline_keyboard": rows})
        elif data == "reseller_komisi":
            summary = repository.commission_summary(self.db, chat_id)
            lines = [
                "💰 Komisi Anda",
                "",
                f"🧾 Penjualan: {summary['sales']}",
                f"🎁 Total komisi: {format_currency(summary['total'])}",
                f"🏅 Level: {user.get('reseller_level')}",
            ]
            recent = repository.recent_sales(self.db, chat_id, limit=5)
            if recent:
                lines += ["", "Terakhir:"]
                lines += [f"• {s['akun_type'].upper()} {s['username']}: {format_currency(s['komisi'])}" for s in recent]
            self._reply(chat_id, "\n".join(lines))
        elif data == "reseller_riwayat":
            recent = repository.recent_sales(self.db, chat_id, limit=10)
            if not recent:
                self._reply(chat_id, "📜 Belum ada penjualan.")
                return
            lines = ["📜 Riwayat Penjualan", ""]
            lines += [f"• {s['created_at']} {s['akun_type'].upper()} {s['username']}: {format_currency(s['komisi'])}" for s in recent]
            self._reply(chat_id, "\n".join(lines))
        else:
            weekly = data.endswith("weekly")
            since = datetime.utcnow() - timedelta(days=7) if weekly else None
            ranking = repository.top_resellers(self.db, since=since)
            title = "📅 Top Reseller Minggu Ini" if weekly else "🏆 Top Reseller"
            if not ranking:
                self._reply(chat_id, f"{title}\n\nBelum ada data.")
                return
            lines = [title, ""]
            for place, row in enumerate(ranking, start=1):
                name = f"@{row['username']}" if row.get("username") else str(row["reseller_id"])
                lines.append(f"{place}. {name}: {format_currency(row['total'])} ({row['sales']} penjualan)")
            self._reply(chat_id, "\n".join(lines))

    # ------------------------------------------------------------------
    # reseller upgrade
    # ------------------------------------------------------------------
    def _show_upgrade_offer(self, chat_id: int) -> None:
        user = repository.get_user(self.db, chat_id) or {}
        if user.get("role") != repository.ROLE_USER:
            self._reply(chat_id, "ℹ️ Akun Anda sudah reseller.")
            return
        self._reply(
            chat_id,
            f"⬆️ Upgrade ke Reseller\n\n💰 Biaya: {format_currency(pricing.RESELLER_UPGRADE_COST)}\n"
            f"💳 Saldo Anda: {format_currency(user.get('saldo', 0))}\n\nUpgrade sekarang?",
            reply_markup={"inline_keyboard": [[_button("✅ Ya, Upgrade", "confirm_upgrade_reseller"), _button("❌ Batal", "main_menu")]]},
        )

    def _upgrade_to_reseller(self, chat_id: int) -> None:
        if repository.upgrade_to_reseller(self.db, chat_id, pricing.RESELLER_UPGRADE_COST):
            self._reply(chat_id, "🎉 Selamat! Akun Anda sekarang reseller level SILVER.")
            self._notify_group(f"⬆️ Pengguna {chat_id} upgrade ke reseller.")
        else:
            self._reply(chat_id, "❌ Upgrade gagal. Pastikan saldo cukup dan akun belum reseller.")

    # ------------------------------------------------------------------
    # numeric keypad
    # ------------------------------------------------------------------
    def _open_keypad(self, chat_id: int, flow: FlowKind, field_key: str, **data: Any) -> None:
        self._begin(chat_id, flow, Phase.KEYPAD, KEYPAD_TIMEOUT, field=field_key, buffer="", **data)
        self._reply(chat_id, keypad.render(keypad.FIELDS[field_key], ""), reply_markup=keypad.keypad_markup())

    def _handle_keypad(self, chat_id: int, key: str, callback: Dict) -> Optional[str]:
        session = self.sessions.get(chat_id)
        if session is None or session.phase is not Phase.KEYPAD:
            return "Sesi sudah berakhir."
        field = keypad.FIELDS[session.data["field"]]
        result = keypad.press(session.data.get("buffer", ""), key, field.cap)
        if result.cancel:
            self.sessions.delete(chat_id)
            self._reply(chat_id, "❌ Operasi dibatalkan.")
            return None
        if result.alert:
            return result.alert
        if result.submit:
            return self._submit_keypad(chat_id, session, field, result.buffer)
        if result.changed:
            self.sessions.advance(chat_id, Phase.KEYPAD, buffer=result.buffer)
            self._redraw(callback, keypad.render(field, result.buffer), keypad.keypad_markup())
        return None

    def _redraw(self, callback: Dict, text: str, markup: Dict) -> None:
        message = callback.get("message") or {}
        if message.get("text") == text:
            return
        try:
            self.bot.edit_message_text(message["chat"]["id"], message["message_id"], text, reply_markup=markup)
        except TelegramAPIError as exc:
            LOGGER.warning("could not redraw keypad: %s", exc)

    def _submit_keypad(self, chat_id: int, session: Session, field: keypad.KeypadField, buffer: str) -> Optional[str]:
        ok, value, error = field.parse(buffer)
        if not ok:
            return error
        if session.flow is FlowKind.EDIT_SERVER_NUMBER:
            server_id = session.data["server_id"]
            if not repository.update_server_field(self.db, server_id, field.column, value):
                self.sessions.delete(chat_id)
                self._reply(chat_id, "❌ Server tidak ditemukan.")
                return None
            self.sessions.delete(chat_id)
            self._reply(chat_id, f"✅ {field.label.capitalize()} server berhasil diubah menjadi {buffer}.")
        elif session.flow is FlowKind.ADD_BALANCE:
            target = session.data["target_id"]
            if not repository.add_balance(self.db, target, int(value)):
                self.sessions.delete(chat_id)
                self._reply(chat_id, "❌ Pengguna tidak ditemukan.")
                return None
            self.sessions.delete(chat_id)
            self._reply(chat_id, f"✅ Saldo {format_currency(value)} berhasil ditambahkan ke {target}.")
            self._reply(target, f"💰 Saldo Anda bertambah {format_currency(value)}.")
        elif session.flow is FlowKind.DEPOSIT:
            if int(value) < self.settings.min_deposit:
                return f"Minimal deposit {format_currency(self.settings.min_deposit)}."
            self.sessions.delete(chat_id)
            self._create_deposit(chat_id, int(value))
        else:
            self.sessions.delete(chat_id)
        return None

    # ------------------------------------------------------------------
    # deposits
    # ------------------------------------------------------------------
    def _start_deposit(self, chat_id: int) -> None:
        self._open_keypad(chat_id, FlowKind.DEPOSIT, "deposit")

    def _create_deposit(self, chat_id: int, amount: int) -> None:
        if self.payments.configured:
            code = f"ORDER-{int(time.time() * 1000)}-{chat_id}"
            deposit = deposits.create_deposit(self.db, chat_id, amount, method=deposits.METHOD_PAKASIR, code=code)
            try:
                payment = self.payments.create_qris(code, amount)
            except PakasirError as exc:
                LOGGER.warning("gateway payment for %s failed: %s", code, exc)
                deposits.close_deposit(self.db, code, deposits.STATUS_FAILED)
                self._reply(chat_id, "❌ Gagal membuat pembayaran. Silakan coba lagi nanti.")
                return
            total = payment.get("total_payment") or amount
            sent = self._reply(
                chat_id,
                f"💳 Pembayaran QRIS\n\n💰 Jumlah: {format_currency(amount)}\n💵 Total bayar: {format_currency(total)}\n"
                f"🆔 Invoice: {code}\n\n{payment.get('payment_number', '')}",
                reply_markup={
                    "inline_keyboard": [
                        [_button("🔄 Cek Status", f"check_payment_{code}")],
                        [_button("❌ Batalkan", f"cancel_payment_{code}")],
                    ]
                },
            )
        else:
            deposit = deposits.create_deposit(self.db, chat_id, amount)
            code = deposit["unique_code"]
            sent = self._reply(
                chat_id,
                f"💳 Pembayaran QRIS\n\n💰 Transfer tepat: {format_currency(deposit['amount'])}\n🆔 Invoice: {code}\n\n"
                f"{self.settings.data_qris}\n\nSetelah membayar, kirim bukti transfer.",
                reply_markup={
                    "inline_keyboard": [
                        [_button("📤 Upload Bukti", f"upload_proof_{code}")],
                        [_button("❌ Batalkan", f"cancel_payment_{code}")],
                    ]
                },
            )
        if sent and sent.get("message_id"):
            deposits.set_message_id(self.db, code, sent["message_id"])

    def _route_deposit_action(self, chat_id: int, verb: str, code: str) -> Optional[str]:
        deposit = deposits.get_deposit(self.db, code)
        if not deposit:
            self._reply(chat_id, "❌ Deposit tidak ditemukan.")
            return None
        if verb in ("approve_deposit", "reject_deposit", "view_deposit"):
            if not self._is_admin(chat_id):
                self._reply(chat_id, DENIED)
                return None
            if verb == "approve_deposit":
                self._approve_deposit(chat_id, code)
            elif verb == "reject_deposit":
                self._reject_deposit(chat_id, code)
            else:
                self._show_deposit(chat_id, deposit)
            return None
        if int(deposit["user_id"]) != chat_id:
            self._reply(chat_id, DENIED)
            return None
        if verb == "upload_proof":
            self._prompt_payment_proof(chat_id, deposit)
        elif verb == "check_payment":
            return self._check_payment(chat_id, deposit)
        elif verb == "cancel_payment":
            result = deposits.close_deposit(self.db, code, deposits.STATUS_CANCELLED)
            if result.ok:
                self._reply(chat_id, "❌ Deposit dibatalkan.")
            else:
                self._reply(chat_id, f"ℹ️ Deposit tidak dapat dibatalkan (status: {result.status}).")
        return None

    def _prompt_payment_proof(self, chat_id: int, deposit: Dict) -> None:
        if deposit["status"] != deposits.STATUS_PENDING:
            self._reply(chat_id, f"ℹ️ Deposit sudah diproses (status: {deposit['status']}).")
            return
        # Expires silently.
        self._begin(
            chat_id,
            FlowKind.DEPOSIT,
            Phase.PROOF_UPLOAD,
            PROOF_UPLOAD_TIMEOUT,
            invoice_id=deposit["unique_code"],
            timestamp=time.time(),
        )
        self._reply(chat_id, "📸 Kirim foto bukti transfer Anda (berlaku 5 menit).")

    def _handle_payment_proof(self, chat_id: int, message: Dict, session: Session) -> None:
        photos = message.get("photo") or []
        if not photos:
            return
        file_id = photos[-1]["file_id"]
        code = session.data["invoice_id"]
        self.sessions.delete(chat_id, session.generation)
        result = deposits.attach_proof(self.db, code, chat_id, file_id)
        if not result.ok:
            self._reply(chat_id, f"ℹ️ Deposit tidak dapat diverifikasi (status: {result.status}).")
            return
        self._reply(chat_id, "✅ Bukti transfer diterima. Mohon tunggu verifikasi admin.")
        deposit = result.deposit
        caption = (
            f"💰 Deposit baru menunggu verifikasi\n\n👤 User: {chat_id}\n"
            f"💵 Jumlah: {format_currency(deposit['amount'])}\n🆔 Invoice: {code}"
        )
        for admin_id in self.settings.admin_ids:
            try:
                self.bot.send_photo(admin_id, file_id, caption=caption, reply_markup=self._verification_keyboard(code))
            except TelegramAPIError as exc:
                LOGGER.warning("failed to notify admin %s about deposit %s: %s", admin_id, code, exc)

    def _verification_keyboard(self, code: str) -> Dict:
        return {
            "inline_keyboard": [
                [_button("✅ Approve", f"approve_deposit_{code}"), _button("❌ Reject", f"reject_deposit_{code}")],
            ]
        }

    def _show_deposit(self, chat_id: int, deposit: Dict) -> None:
        caption = (
            f"🆔 {deposit['unique_code']}\n👤 User: {deposit['user_id']}\n"
            f"💵 Jumlah: {format_currency(deposit['amount'])}\n📌 Status: {deposit['status']}"
        )
        markup = self._verification_keyboard(deposit["unique_code"]) if deposit["status"] == deposits.STATUS_AWAITING_VERIFICATION else None
        if deposit.get("proof_image_id"):
            try:
                self.bot.send_photo(chat_id, deposit["proof_image_id"], caption=caption, reply_markup=markup)
                return
            except TelegramAPIError as exc:
                LOGGER.warning("could not show proof for %s: %s", deposit["unique_code"], exc)
        self._reply(chat_id, caption, reply_markup=markup)

    def _approve_deposit(self, chat_id: int, code: str) -> None:
        result = deposits.approve_deposit(self.db, code, chat_id)
        if not result.ok:
            self._reply(chat_id, f"ℹ️ Deposit sudah diproses (status: {result.status}).")
            return
        deposit = result.deposit
        self._reply(chat_id, f"✅ Deposit {code} disetujui.")
        self._reply(
            int(deposit["user_id"]),
            f"✅ Deposit {format_currency(deposit['amount'])} telah diverifikasi. Saldo Anda sudah ditambahkan.",
        )

    def _reject_deposit(self, chat_id: int, code: str) -> None:
        result = deposits.reject_deposit(self.db, code, chat_id)
        if not result.ok:
            self._reply(chat_id, f"ℹ️ Deposit sudah diproses (status: {result.status}).")
            return
        self._reply(chat_id, f"❌ Deposit {code} ditolak.")
        self._reply(int(result.deposit["user_id"]), f"❌ Deposit {code} ditolak oleh admin. Hubungi admin untuk informasi lebih lanjut.")

    def _check_payment(self, chat_id: int, deposit: Dict) -> Optional[str]:
        code = deposit["unique_code"]
        if deposit["status"] != deposits.STATUS_PENDING:
            return f"Status deposit: {deposit['status']}"
        if deposit["payment_method"] != deposits.METHOD_PAKASIR:
            return "Pembayaran masih menunggu."
        try:
            status = self.payments.transaction_status(code, int(deposit["original_amount"]))
        except PakasirError as exc:
            LOGGER.warning("status check for %s failed: %s", code, exc)
            return "Gagal mengecek status. Coba lagi nanti."
        if status == deposits.STATUS_PAID:
            self.settle_gateway_payment(code, reference=code)
        elif status in (deposits.STATUS_EXPIRED, deposits.STATUS_FAILED):
            self.close_gateway_payment(code, status)
        else:
            return "Pembayaran masih menunggu."
        return None

    def settle_gateway_payment(self, code: str, reference: Optional[str] = None) -> deposits.Transition:
        """Credit a deposit confirmed by the gateway and tell the user and the group."""

        result = deposits.mark_gateway_paid(self.db, code, reference)
        if result.ok:
            deposit = result.deposit
            self._reply(
                int(deposit["user_id"]),
                f"✅ Pembayaran {format_currency(deposit['amount'])} berhasil. Saldo Anda sudah ditambahkan.",
            )
            self._notify_group(f"💰 Deposit {code} sebesar {format_currency(deposit['amount'])} dari {deposit['user_id']} berhasil.")
        return result

    def close_gateway_payment(self, code: str, status: str) -> deposits.Transition:
        result = deposits.close_deposit(self.db, code, status)
        if result.ok:
            label = "kedaluwarsa" if status == deposits.STATUS_EXPIRED else "gagal"
            self._reply(int(result.deposit["user_id"]), f"❌ Pembayaran {code} {label}. Silakan buat deposit baru.")
        return result

    # ------------------------------------------------------------------
    # admin reports
    # ------------------------------------------------------------------
    def _show_stats(self, chat_id: int) -> None:
        stats = repository.store_stats(self.db)
        lines = [
            "📊 Statistik Toko",
            "",
            f"👥 Pengguna: {stats['users']}",
            f"💼 Reseller: {stats['resellers']}",
            f"🖥 Server: {stats['servers']}",
            f"💳 Total saldo: {format_currency(stats['saldo'])}",
            f"🧾 Transaksi: {stats['invoices']}",
            f"🎁 Total komisi: {format_currency(stats['commission'])}",
        ]
        top = repository.top_resellers(self.db, limit=3)
        if top:
            lines += ["", "🏆 Top Reseller:"]
            for place, row in enumerate(top, start=1):
                name = f"@{row['username']}" if row.get("username") else str(row["reseller_id"])
                lines.append(f"{place}. {name}: {format_currency(row['total'])}")
        self._reply(chat_id, "\n".join(lines))

    def _list_users(self, chat_id: int, role: Optional[str]) -> None:
        users = repository.list_users(self.db, role, limit=USER_LIST_SHOWN)
        title = "💼 Daftar Reseller" if role == pricing.ROLE_RESELLER else "👥 Daftar User"
        if not users:
            self._reply(chat_id, f"{title}\n\nBelum ada data.")
            return
        lines = [f"{title} ({len(users)} terbaru)", ""]
        for user in users:
            name = f"@{user['username']}" if user.get("username") else "-"
            extra = f" {user['reseller_level']}" if user.get("role") == pricing.ROLE_RESELLER else ""
            lines.append(f"• {user['user_id']} {name} [{user['role']}{extra}] {format_currency(user['saldo'])}")
        self._reply(chat_id, "\n".join(lines))

    def _list_pending_deposits(self, chat_id: int) -> None:
        pending = deposits.awaiting_verification(self.db)
        if not pending:
            self._reply(chat_id, "✅ Tidak ada deposit yang menunggu verifikasi.")
            return
        rows = [
            [_button(f"🧾 {d['unique_code']} {d['user_id']} {format_currency(d['amount'])}", f"view_deposit_{d['unique_code']}")]
            for d in pending
        ]
        rows.append([_button("🔙 Menu Admin", "admin_menu")])
        self._reply(chat_id, f"🧾 {len(pending)} deposit menunggu verifikasi:", reply_markup={"inline_keyboard": rows})

    def _list_topups(self, chat_id: int) -> None:
        topups = repository.recent_topups(self.db)
        if not topups:
            self._reply(chat_id, "📜 Belum ada top up.")
            return
        lines = ["📜 Riwayat Top Up", ""]
        for t in topups:
            name = f"@{t['username']}" if t.get("username") else str(t["user_id"])
            lines.append(f"• {t['created_at']} {name}: {format_currency(t['amount'])} ({t['reference'] or '-'})")
        self._reply(chat_id, "\n".join(lines))

    # ------------------------------------------------------------------
    # server administration
    # ------------------------------------------------------------------
    def _prompt_add_server(self, chat_id: int) -> None:
        self._begin(chat_id, FlowKind.ADD_SERVER, ADD_SERVER_PHASES[0], SERVER_SETUP_TIMEOUT, values={})
        self._reply(chat_id, ADD_SERVER_PROMPTS[ADD_SERVER_PHASES[0]])

    def _handle_add_server(self, chat_id: int, message: Dict, session: Session) -> None:
        text = sanitize_string(message.get("text", ""))
        phase = session.phase
        value: Any = text
        if not text:
            self._reply(chat_id, "❌ Input tidak boleh kosong.")
            return
        if phase is Phase.DOMAIN and not validate_domain(text):
            self._reply(chat_id, "❌ Domain tidak valid.")
            return
        if phase in (Phase.QUOTA, Phase.IP_LIMIT, Phase.ACCOUNT_LIMIT):
            ok, value = validate_int(text)
            if not ok:
                self._reply(chat_id, "❌ Masukkan angka yang valid.")
                return
        if phase is Phase.PRICE:
            ok, value = validate_price(text)
            if not ok:
                self._reply(chat_id, "❌ Harga harus angka lebih dari 0.")
                return
        values = dict(session.data.get("values", {}))
        values[ADD_SERVER_KEYS[phase]] = value
        index = ADD_SERVER_PHASES.index(phase)
        if index + 1 < len(ADD_SERVER_PHASES):
            next_phase = ADD_SERVER_PHASES[index + 1]
            self.sessions.advance(chat_id, next_phase, values=values)
            self._reply(chat_id, ADD_SERVER_PROMPTS[next_phase])
            return
        self.sessions.delete(chat_id)
        server_id = repository.add_server(self.db, values)
        LOGGER.info("server %s (%s) added by %s", server_id, values["domain"], chat_id)
        self._reply(chat_id, f"✅ Server {values['nama_server']} berhasil ditambahkan.")

    def _list_servers(self, chat_id: int) -> None:
        servers = repository.list_servers(self.db)
        if not servers:
            self._reply(chat_id, "⚠️ Belum ada server.")
            return
        lines = []
        rows = []
        for s in servers:
            lines.append(
                f"#{s['id']} {s['nama_server']} ({s['domain']})\n"
                f"   {format_currency(s['harga'])}/hari, quota {s['quota']} GB, IP {s['iplimit']}, "
                f"akun {s['total_create_akun']}/{s['batas_create_akun']}"
            )
            rows.append([_button(f"✏️ Edit #{s['id']}", f"editserver_{s['id']}"), _button(f"🗑 Hapus #{s['id']}", f"deleteserver_{s['id']}")])
        self._reply(chat_id, "\n".join(lines), reply_markup={"inline_keyboard": rows})

    def _show_server_edit_menu(self, chat_id: int, server_id: int) -> None:
        server = repository.get_server(self.db, server_id)
        if not server:
            self._reply(chat_id, "❌ Server tidak ditemukan.")
            return
        rows = [
            [_button("💰 Harga", f"edit_harga_{server_id}"), _button("📊 Quota", f"edit_quota_{server_id}")],
            [_button("🔢 Limit IP", f"edit_limit_ip_{server_id}"), _button("👥 Batas Akun", f"edit_batas_create_akun_{server_id}")],
            [_button("🏷 Nama", f"edit_nama_{server_id}"), _button("🔑 Auth", f"edit_auth_{server_id}")],
            [_button("🌐 Domain", f"edit_domain_{server_id}")],
        ]
        self._reply(chat_id, f"✏️ Edit server {server['nama_server']}:", reply_markup={"inline_keyboard": rows})

    def _prompt_server_edit(self, chat_id: int, field: str, server_id: int) -> None:
        if not repository.get_server(self.db, server_id):
            self._reply(chat_id, "❌ Server tidak ditemukan.")
            return
        if field in NUMBER_EDITS:
            self._open_keypad(chat_id, FlowKind.EDIT_SERVER_NUMBER, NUMBER_EDITS[field], server_id=server_id)
            return
        self._begin(chat_id, FlowKind.EDIT_SERVER_TEXT, Phase.TEXT, KEYPAD_TIMEOUT, server_id=server_id, column=TEXT_EDITS[field])
        self._reply(chat_id, f"✏️ Masukkan {field} baru:")

    def _handle_edit_server_text(self, chat_id: int, message: Dict, session: Session) -> None:
        value = sanitize_string(message.get("text", ""))
        column = session.data["column"]
        if not value:
            self._reply(chat_id, "❌ Input tidak boleh kosong.")
            return
        if column == "domain" and not validate_domain(value):
            self._reply(chat_id, "❌ Domain tidak valid.")
            return
        self.sessions.delete(chat_id)
        if repository.update_server_field(self.db, session.data["server_id"], column, value):
            self._reply(chat_id, "✅ Server berhasil diperbarui.")
        else:
            self._reply(chat_id, "❌ Server tidak ditemukan.")

    def _confirm_delete_server(self, chat_id: int, server_id: int) -> None:
        server = repository.get_server(self.db, server_id)
        if not server:
            self._reply(chat_id, "❌ Server tidak ditemukan.")
            return
        self._reply(
            chat_id,
            f"🗑 Hapus server {server['nama_server']}?",
            reply_markup={"inline_keyboard": [[_button("✅ Ya", f"confirm_deleteserver_{server_id}"), _button("❌ Batal", "listserver")]]},
        )

    def _delete_server(self, chat_id: int, server_id: int) -> None:
        if repository.delete_server(self.db, server_id):
            self._reply(chat_id, f"✅ Server #{server_id} dihapus.")
        else:
            self._reply(chat_id, "❌ Server tidak ditemukan.")

    # ------------------------------------------------------------------
    # reseller administration
    # ------------------------------------------------------------------
    def _prompt_admin_input(self, chat_id: int, flow: FlowKind, prompt: str) -> None:
        self._begin(chat_id, flow, Phase.TEXT, ADMIN_INPUT_TIMEOUT, notify="⏰ Waktu habis. Silakan ulangi dari menu admin.")
        self._reply(chat_id, prompt)

    def _read_user_id(self, chat_id: int, message: Dict) -> Optional[int]:
        ok, user_id = validate_user_id(message.get("text", ""))
        if not ok:
            self._reply(chat_id, "❌ ID pengguna harus berupa angka.")
            return None
        return user_id

    def _handle_add_balance_target(self, chat_id: int, message: Dict, session: Session) -> None:
        target = self._read_user_id(chat_id, message)
        if target is None:
            return
        if not repository.get_user(self.db, target):
            self.sessions.delete(chat_id)
            self._reply(chat_id, "❌ Pengguna tidak ditemukan.")
            return
        self._open_keypad(chat_id, FlowKind.ADD_BALANCE, "saldo", target_id=target)

    def _handle_promote(self, chat_id: int, message: Dict, session: Session) -> None:
        target = self._read_user_id(chat_id, message)
        if target is None:
            return
        self.sessions.delete(chat_id)
        if repository.promote_to_reseller(self.db, target):
            self._reply(chat_id, f"✅ Pengguna {target} sekarang reseller.")
            self._reply(target, "🎉 Akun Anda telah dijadikan reseller oleh admin.")
        else:
            self._reply(chat_id, "❌ Pengguna tidak ditemukan.")

    def _handle_downgrade(self, chat_id: int, message: Dict, session: Session) -> None:
        target = self._read_user_id(chat_id, message)
        if target is None:
            return
        self.sessions.delete(chat_id)
        if repository.downgrade_reseller(self.db, target):
            self._reply(chat_id, f"✅ Reseller {target} diturunkan menjadi user.")
        else:
            self._reply(chat_id, "❌ Reseller tidak ditemukan.")

    def _handle_level_change(self, chat_id: int, message: Dict, session: Session) -> None:
        ok, target, level = parse_level_change(message.get("text", ""))
        if not ok:
            self._reply(chat_id, "❌ Format salah. Gunakan: ID LEVEL (silver/gold/platinum)")
            return
        self.sessions.delete(chat_id)
        if repository.set_reseller_level(self.db, target, level):
            self._reply(chat_id, f"✅ Level reseller {target} diubah menjadi {level.upper()}.")
        else:
            self._reply(chat_id, "❌ Reseller tidak ditemukan.")

    def _handle_reset_commission(self, chat_id: int, message: Dict, session: Session) -> None:
        target = self._read_user_id(chat_id, message)
        if target is None:
            return
        self.sessions.delete(chat_id)
        removed = repository.reset_commission(self.db, target)
        self._reply(chat_id, f"✅ Komisi reseller {target} direset ({removed} transaksi dihapus).")

    # ------------------------------------------------------------------
    # broadcast
    # ------------------------------------------------------------------
    def _handle_broadcast(self, chat_id: int, message: Dict, session: Session) -> None:
        text = message.get("text", "").strip()
        if not text:
            self._reply(chat_id, "❌ Pesan tidak boleh kosong.")
            return
        self.sessions.delete(chat_id)
        self._reply(chat_id, "📢 Broadcast sedang dikirim...")

        def _run() -> None:
            sent, failed = self.broadcast(text)
            self._reply(chat_id, f"📢 Broadcast selesai.\n✅ Berhasil: {sent}\n❌ Gagal: {failed}")

        threading.Thread(target=_run, name="broadcast", daemon=True).start()

    def broadcast(self, text: str) -> Tuple[int, int]:
        """Send ``text`` to every user; individual failures never stop the loop."""

        sent = failed = 0
        for user_id in repository.all_user_ids(self.db):
            try:
                self.bot.send_message(user_id, text)
                sent += 1
            except TelegramAPIError as exc:
                failed += 1
                LOGGER.warning("broadcast to %s failed: %s", user_id, exc)
            if self.broadcast_delay:
                time.sleep(self.broadcast_delay)
        LOGGER.info("broadcast finished: %s sent, %s failed", sent, failed)
        return sent, failed

    # ------------------------------------------------------------------
    # backup / restore
    # ------------------------------------------------------------------
    def _send_backup(self, chat_id: int) -> None:
        try:
            path = backup.create_backup(self.db, self.settings.backup_dir)
        except (OSError, backup.BackupError) as exc:
            LOGGER.error("backup failed: %s", exc)
            self._reply(chat_id, "❌ Gagal membuat backup.")
            return
        try:
            self.bot.send_document(chat_id, str(path), caption=f"💾 {path.name}")
        except (OSError, TelegramAPIError) as exc:
            LOGGER.warning("could not send backup %s: %s", path.name, exc)
            self._reply(chat_id, f"✅ Backup tersimpan sebagai {path.name}, tetapi gagal dikirim.")

    def _list_backups(self, chat_id: int) -> None:
        names = backup.list_backups(self.settings.backup_dir)
        if not names:
            self._reply(chat_id, "⚠️ Belum ada file backup.")
            return
        rows = [[_button(f"♻️ {n}", f"restore_file::{n}"), _button("🗑", f"delete_file::{n}")] for n in names]
        self._reply(chat_id, "🗂 Daftar backup:", reply_markup={"inline_keyboard": rows})

    def _route_backup_action(self, chat_id: int, verb: str, name: str) -> None:
        if verb == "restore_file":
            self._reply(
                chat_id,
                f"⚠️ Restore database dari {name}? Data saat ini akan diganti.",
                reply_markup={"inline_keyboard": [[_button("✅ Ya, Restore", f"confirm_restore::{name}"), _button("❌ Batal", "list_backups")]]},
            )
        elif verb == "delete_file":
            self._reply(
                chat_id,
                f"🗑 Hapus backup {name}?",
                reply_markup={"inline_keyboard": [[_button("✅ Ya, Hapus", f"confirm_delete::{name}"), _button("❌ Batal", "list_backups")]]},
            )
        elif verb == "confirm_restore":
            try:
                path = backup.resolve_backup(self.settings.backup_dir, name)
                backup.restore_backup(self.db, path)
            except (OSError, backup.BackupError) as exc:
                LOGGER.error("restore from %s failed: %s", name, exc)
                self._reply(chat_id, "❌ Gagal restore database.")
                return
            self._reply(chat_id, f"✅ Database berhasil direstore dari {name}.")
        elif verb == "confirm_delete":
            try:
                backup.delete_backup(self.settings.backup_dir, name)
            except (OSError, backup.BackupError) as exc:
                LOGGER.error("deleting backup %s failed: %s", name, exc)
                self._reply(chat_id, "❌ Gagal menghapus backup.")
                return
            self._reply(chat_id, f"✅ Backup {name} dihapus.")

    def _handle_restore_upload(self, chat_id: int, message: Dict, session: Session) -> None:
        document = message.get("document")
        if not document:
            return
        name = secure_filename(document.get("file_name", ""))
        if not name.endswith(backup.BACKUP_SUFFIX):
            self._reply(chat_id, "❌ File harus berekstensi .db")
            return
        self.sessions.delete(chat_id, session.generation)
        destination = Path(self.settings.upload_dir) / name
        try:
            self.bot.download_file(document["file_id"], str(destination))
            backup.restore_backup(self.db, destination)
        except (OSError, TelegramAPIError, backup.BackupError) as exc:
            LOGGER.error("restore from upload %s failed: %s", name, exc)
            self._reply(chat_id, "❌ Gagal restore database dari file.")
            return
        self._reply(chat_id, "✅ Database berhasil direstore dari file yang diupload.")
