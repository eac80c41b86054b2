"""On-screen numeric keypad used for number entry.

The keypad is an inline keyboard whose buttons send ``num_*`` callbacks.
Pressed digits accumulate in a string buffer held in the chat session; each
editable field declares how long the buffer may grow and how the final value
is parsed.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

DIGITS_RE = re.compile(r"^[0-9]+$")

KEY_BACKSPACE = "num_backspace"
KEY_SUBMIT = "num_submit"
KEY_CANCEL = "num_cancel"

GENERIC_CAP = 20
PRICE_CAP = 12
BALANCE_CAP = 10
DEPOSIT_CAP = 12


def _parse_int(raw: str) -> Tuple[bool, Optional[float], Optional[str]]:
    try:
        value = int(raw)
    except ValueError:
        return False, None, "Masukkan angka yang valid."
    return True, value, None


def _parse_price(raw: str) -> Tuple[bool, Optional[float], Optional[str]]:
    try:
        value = float(raw)
    except ValueError:
        return False, None, "Harga tidak valid."
    if value <= 0:
        return False, None, "Harga harus lebih dari 0."
    return True, value, None


def _parse_positive_int(raw: str) -> Tuple[bool, Optional[float], Optional[str]]:
    ok, value, error = _parse_int(raw)
    if ok and value <= 0:
        return False, None, "Jumlah harus lebih dari 0."
    return ok, value, error


@dataclass(frozen=True)
class KeypadField:
    key: str
    label: str
    cap: int
    parse: Callable[[str], Tuple[bool, Optional[float], Optional[str]]]
    column: Optional[str] = None


FIELDS: Dict[str, KeypadField] = {
    "batas_create_akun": KeypadField("batas_create_akun", "batas create akun", GENERIC_CAP, _parse_int, "batas_create_akun"),
    "iplimit": KeypadField("iplimit", "limit IP", GENERIC_CAP, _parse_int, "iplimit"),
    "quota": KeypadField("quota", "quota", GENERIC_CAP, _parse_int, "quota"),
    "harga": KeypadField("harga", "harga", PRICE_CAP, _parse_price, "harga"),
    "saldo": KeypadField("saldo", "saldo", BALANCE_CAP, _parse_positive_int),
    "deposit": KeypadField("deposit", "jumlah deposit", DEPOSIT_CAP, _parse_positive_int),
}


@dataclass(frozen=True)
class KeyResult:
    """Outcome of a single key press.

    ``buffer`` is the accumulated input after the press. ``alert`` is a
    message to show the user without changing anything; ``submit`` and
    ``cancel`` tell the caller to finish the edit.
    """

    buffer: str
    changed: bool = False
    submit: bool = False
    cancel: bool = False
    alert: Optional[str] = None


def press(buffer: str, key: str, cap: int) -> KeyResult:
    """Apply one keypad callback to ``buffer``."""

    buffer = buffer or ""
    if key == KEY_CANCEL:
        return KeyResult(buffer, cancel=True)
    if key == KEY_BACKSPACE:
        if not buffer:
            return KeyResult(buffer)
        return KeyResult(buffer[:-1], changed=True)
    if key == KEY_SUBMIT:
        if not buffer:
            return KeyResult(buffer, alert="Masukkan angka terlebih dahulu.")
        return KeyResult(buffer, submit=True)
    if not key.startswith("num_"):
        return KeyResult(buffer, alert="Tombol tidak dikenal.")
    digits = key[len("num_"):]
    if not DIGITS_RE.match(digits):
        return KeyResult(buffer, alert="Input tidak valid.")
    if len(buffer) >= cap:
        return KeyResult(buffer, alert=f"Maksimal {cap} digit.")
    return KeyResult((buffer + digits)[:cap], changed=True)


def keypad_markup() -> Dict:
    """Inline keyboard layout shared by every numeric field."""

    def button(text: str, data: str) -> Dict[str, str]:
        return {"text": text, "callback_data": data}

    rows = [[button(d, f"num_{d}") for d in row] for row in (("1", "2", "3"), ("4", "5", "6"), ("7", "8", "9"), ("0", "00", "000"))]
    rows.append([button("⬅️ Hapus", KEY_BACKSPACE), button("✅ Kirim", KEY_SUBMIT)])
    rows.append([button("❌ Batal", KEY_CANCEL)])
    return {"inline_keyboard": rows}


def render(field: KeypadField, buffer: str) -> str:
    # Plain text so the caller can compare it with the text Telegram echoes back.
    shown = buffer if buffer else "-"
    return f"Masukkan {field.label}:\n\n{shown}"
