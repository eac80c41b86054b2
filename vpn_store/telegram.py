"""Small wrapper around the Telegram Bot API using :mod:`requests`."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import requests

LOGGER = logging.getLogger(__name__)


class TelegramAPIError(RuntimeError):
    """Error raised when Telegram returns a failure."""


class TelegramBot:
    """Calls the HTTP Bot API directly."""

    def __init__(self, token: str) -> None:
        self.token = token
        self.base_url = f"https://api.telegram.org/bot{token}/"
        self.file_url = f"https://api.telegram.org/file/bot{token}/"

    def _request(
        self,
        method: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        timeout: int = 20,
    ) -> Any:
        try:
            response = requests.post(self.base_url + method, data=params, files=files, timeout=timeout)
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TelegramAPIError(f"{method} failed: {exc}") from exc
        if not payload.get("ok"):
            raise TelegramAPIError(str(payload))
        return payload["result"]

    def get_updates(self, *, offset: Optional[int] = None, timeout: int = 25) -> Iterable[Dict[str, Any]]:
        params: Dict[str, Any] = {"timeout": timeout}
        if offset is not None:
            params["offset"] = offset
        response = requests.get(self.base_url + "getUpdates", params=params, timeout=timeout + 5)
        data = response.json()
        if not data.get("ok"):
            raise TelegramAPIError(str(data))
        return data.get("result", [])

    def send_message(
        self,
        chat_id: Any,
        text: str,
        *,
        reply_markup: Optional[Dict[str, Any]] = None,
        parse_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            params["parse_mode"] = parse_mode
        if reply_markup is not None:
            params["reply_markup"] = json_dumps(reply_markup)
        return self._request("sendMessage", params=params)

    def edit_message_text(
        self,
        chat_id: Any,
        message_id: int,
        text: str,
        *,
        reply_markup: Optional[Dict[str, Any]] = None,
        parse_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"chat_id": chat_id, "message_id": message_id, "text": text}
        if parse_mode:
            params["parse_mode"] = parse_mode
        if reply_markup is not None:
            params["reply_markup"] = json_dumps(reply_markup)
        return self._request("editMessageText", params=params)

    def send_photo(
        self,
        chat_id: Any,
        file_id: str,
        *,
        caption: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"chat_id": chat_id, "photo": file_id}
        if caption:
            params["caption"] = caption
        if reply_markup is not None:
            params["reply_markup"] = json_dumps(reply_markup)
        return self._request("sendPhoto", params=params)

    def send_document(self, chat_id: Any, path: str, *, caption: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"chat_id": chat_id}
        if caption:
            params["caption"] = caption
        with open(path, "rb") as handle:
            return self._request(
                "sendDocument",
                params=params,
                files={"document": (Path(path).name, handle)},
                timeout=120,
            )

    def answer_callback_query(self, callback_query_id: str, *, text: Optional[str] = None, show_alert: bool = False) -> None:
        params: Dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            params["text"] = text
        if show_alert:
            params["show_alert"] = "true"
        self._request("answerCallbackQuery", params=params)

    def download_file(self, file_id: str, destination: str) -> Path:
        """Fetch an uploaded file (photo, document) to ``destination``."""

        info = self._request("getFile", params={"file_id": file_id})
        file_path = info.get("file_path")
        if not file_path:
            raise TelegramAPIError(f"no file path for {file_id}")
        target = Path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with requests.get(self.file_url + file_path, stream=True, timeout=120) as response:
                response.raise_for_status()
                with open(target, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=65536):
                        handle.write(chunk)
        except requests.RequestException as exc:
            raise TelegramAPIError(f"download of {file_id} failed: {exc}") from exc
        return target


def json_dumps(value: Dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
