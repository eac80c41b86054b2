"""Text helpers for chat messages."""
from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Optional

MARKDOWN_SPECIAL_RE = re.compile(r"([_*\[\]()~`>#+=|{}.!\\-])")

# Longer names first so "united states" wins over "us".
FLAG_NAMES = (
    ("singapore", "🇸🇬"),
    ("indonesia", "🇮🇩"),
    ("jakarta", "🇮🇩"),
    ("surabaya", "🇮🇩"),
    ("bandung", "🇮🇩"),
    ("japan", "🇯🇵"),
    ("tokyo", "🇯🇵"),
    ("osaka", "🇯🇵"),
    ("united states", "🇺🇸"),
    ("america", "🇺🇸"),
    ("new york", "🇺🇸"),
    ("california", "🇺🇸"),
    ("los angeles", "🇺🇸"),
    ("miami", "🇺🇸"),
    ("germany", "🇩🇪"),
    ("frankfurt", "🇩🇪"),
    ("netherlands", "🇳🇱"),
    ("amsterdam", "🇳🇱"),
    ("united kingdom", "🇬🇧"),
    ("london", "🇬🇧"),
    ("france", "🇫🇷"),
    ("paris", "🇫🇷"),
    ("hong kong", "🇭🇰"),
    ("malaysia", "🇲🇾"),
    ("kuala lumpur", "🇲🇾"),
    ("thailand", "🇹🇭"),
    ("bangkok", "🇹🇭"),
    ("vietnam", "🇻🇳"),
    ("india", "🇮🇳"),
    ("mumbai", "🇮🇳"),
    ("australia", "🇦🇺"),
    ("sydney", "🇦🇺"),
    ("canada", "🇨🇦"),
    ("korea", "🇰🇷"),
    ("seoul", "🇰🇷"),
    ("taiwan", "🇹🇼"),
)

FLAG_CODES = {
    "sg": "🇸🇬",
    "id": "🇮🇩",
    "jp": "🇯🇵",
    "us": "🇺🇸",
    "usa": "🇺🇸",
    "de": "🇩🇪",
    "nl": "🇳🇱",
    "uk": "🇬🇧",
    "gb": "🇬🇧",
    "fr": "🇫🇷",
    "hk": "🇭🇰",
    "my": "🇲🇾",
    "th": "🇹🇭",
    "vn": "🇻🇳",
    "in": "🇮🇳",
    "au": "🇦🇺",
    "ca": "🇨🇦",
    "kr": "🇰🇷",
    "tw": "🇹🇼",
}

DEFAULT_FLAG = "🌐"


def escape_markdown(text: Any) -> str:
    """Escape characters that carry meaning in Telegram MarkdownV2."""

    return MARKDOWN_SPECIAL_RE.sub(r"\\\1", str(text))


def format_currency(amount: Any) -> str:
    """Format an amount as rupiah with ``.`` thousands separators."""

    value = int(round(float(amount or 0)))
    sign = "-" if value < 0 else ""
    return f"Rp {sign}{abs(value):,}".replace(",", ".")


def flag_emoji(location: Optional[str]) -> str:
    """Best effort flag for a free-form location such as ``"Jakarta, ID"``."""

    if not location:
        return DEFAULT_FLAG
    lowered = location.lower().strip()
    for name, flag in FLAG_NAMES:
        if name in lowered:
            return flag
    for token in re.split(r"[\s,/()-]+", lowered):
        if token in FLAG_CODES:
            return FLAG_CODES[token]
    return DEFAULT_FLAG


def server_button_label(server: Dict[str, Any]) -> str:
    flag = flag_emoji(server.get("lokasi") or server.get("nama_server"))
    return f"{flag} {server['nama_server']} ({format_currency(server['harga'])}/Hari)"


def invoice_text(
    *,
    buyer: Dict[str, Any],
    action: str,
    protocol: str,
    username: str,
    server_name: str,
    days: int,
    total: int,
    commission: int,
) -> str:
    """Invoice posted to the operations group after a successful purchase."""

    who = f"@{buyer['username']}" if buyer.get("username") else f"ID {buyer.get('user_id')}"
    lines = [
        "🧾 *TRANSAKSI BERHASIL*",
        "",
        f"👤 Pembeli: {escape_markdown(who)}",
        f"📦 Layanan: {escape_markdown(action.upper())} {escape_markdown(protocol.upper())}",
        f"🆔 Akun: `{escape_markdown(username)}`",
        f"🖥 Server: {escape_markdown(server_name)}",
        f"🗓 Masa aktif: {days} Hari",
        f"💰 Harga: {escape_markdown(format_currency(total))}",
    ]
    if commission:
        lines.append(f"🎁 Komisi: {escape_markdown(format_currency(commission))}")
    return "\n".join(lines)


def account_details_text(
    *,
    protocol: str,
    action: str,
    username: str,
    server_name: str,
    days: int,
    total: int,
    expires_at: Optional[str],
    details: Dict[str, Any],
) -> str:
    """Account summary sent to the buyer."""

    title = "AKUN BARU" if action == "create" else "PERPANJANGAN AKUN"
    lines = [
        f"🔥 *{escape_markdown(protocol.upper())} {title}*",
        "",
        f"👤 Username: `{escape_markdown(username)}`",
        f"🖥 Server: {escape_markdown(server_name)}",
        f"🗓 Masa aktif: {days} Hari",
        f"💰 Harga: {escape_markdown(format_currency(total))}",
    ]
    if expires_at:
        lines.append(f"⏰ Expired: `{escape_markdown(expires_at)}`")
    for key, value in _detail_items(details):
        lines.append(f"🔹 {escape_markdown(key)}: `{escape_markdown(value)}`")
    return "\n".join(lines)


def trial_details_text(
    *,
    protocol: str,
    username: str,
    server_name: str,
    minutes: int,
    expires_at: Optional[str],
    details: Dict[str, Any],
) -> str:
    lines = [
        f"⚡ *AKUN {escape_markdown(protocol.upper())} TRIAL*",
        "",
        f"👤 Username: `{escape_markdown(username)}`",
        f"🖥 Server: {escape_markdown(server_name)}",
        f"⏳ Durasi: {minutes} Menit",
    ]
    if expires_at:
        lines.append(f"⏰ Expired: `{escape_markdown(expires_at)}`")
    for key, value in _detail_items(details):
        lines.append(f"🔹 {escape_markdown(key)}: `{escape_markdown(value)}`")
    return "\n".join(lines)


def trial_notice_text(
    *,
    user: Dict[str, Any],
    protocol: str,
    server_name: str,
    role: str,
    count: int,
    limit: Optional[int],
    minutes: int,
) -> str:
    """Group notice for a handed out trial."""

    who = f"@{user['username']}" if user.get("username") else f"ID {user.get('user_id')}"
    quota = f"{count} dari {limit}" if limit is not None else f"{count} (tanpa batas)"
    lines = [
        f"🎁 *TRIAL {escape_markdown(protocol.upper())} BARU*",
        "",
        f"👤 User: {escape_markdown(who)}",
        f"📩 Trial oleh: {escape_markdown(role.title())}, {escape_markdown(quota)}",
        f"🌐 Server: {escape_markdown(server_name)}",
        f"⏳ Durasi: {minutes} Menit",
    ]
    return "\n".join(lines)


def _detail_items(details: Dict[str, Any]) -> Iterable:
    for key in sorted(details):
        value = details[key]
        if value in (None, ""):
            continue
        yield key, value
