"""Conversation flow identifiers and the step dispatcher.

A chat's position in a multi-step conversation is the pair
``(FlowKind, Phase)``. Handlers are registered against exact pairs (or a
whole flow with ``phase=None``) so two flows can never shadow each other.
"""
from __future__ import annotations

import enum
import logging
from typing import Callable, Dict, Optional, Tuple

LOGGER = logging.getLogger(__name__)


class FlowKind(enum.Enum):
    SERVICE = "service"
    ADD_SERVER = "add_server"
    EDIT_SERVER_NUMBER = "edit_server_number"
    EDIT_SERVER_TEXT = "edit_server_text"
    ADD_BALANCE = "add_balance"
    DEPOSIT = "deposit"
    LEVEL_CHANGE = "level_change"
    PROMOTE_RESELLER = "promote_reseller"
    DOWNGRADE_RESELLER = "downgrade_reseller"
    RESET_COMMISSION = "reset_commission"
    BROADCAST = "broadcast"
    RESTORE_UPLOAD = "restore_upload"


class Phase(enum.Enum):
    USERNAME = "username"
    PASSWORD = "password"
    DURATION = "duration"
    CONFIRM = "confirm"
    KEYPAD = "keypad"
    TEXT = "text"
    DOMAIN = "domain"
    AUTH = "auth"
    NAME = "name"
    QUOTA = "quota"
    IP_LIMIT = "ip_limit"
    ACCOUNT_LIMIT = "account_limit"
    PRICE = "price"
    AMOUNT = "amount"
    PENDING = "pending"
    PROOF_UPLOAD = "proof_upload"
    DOCUMENT = "document"


# Ordered steps of the add-server text chain.
ADD_SERVER_PHASES = (
    Phase.DOMAIN,
    Phase.AUTH,
    Phase.NAME,
    Phase.QUOTA,
    Phase.IP_LIMIT,
    Phase.ACCOUNT_LIMIT,
    Phase.PRICE,
)

Handler = Callable[..., None]


class Dispatcher:
    """Route inbound input to the handler registered for the chat's session.

    Handlers receive ``(chat_id, payload, session)``. ``payload`` is the raw
    Telegram message for text, photo and document input.
    """

    def __init__(self) -> None:
        self._routes: Dict[Tuple[FlowKind, Optional[Phase]], Handler] = {}

    def register(self, flow: FlowKind, phase: Optional[Phase], handler: Handler) -> None:
        key = (flow, phase)
        if key in self._routes:
            raise ValueError(f"handler already registered for {flow.value}/{phase.value if phase else '*'}")
        self._routes[key] = handler

    def resolve(self, flow: FlowKind, phase: Phase) -> Optional[Handler]:
        handler = self._routes.get((flow, phase))
        if handler is None:
            handler = self._routes.get((flow, None))
        return handler

    def dispatch(self, chat_id: int, payload: Dict, session) -> bool:
        """Invoke the matching handler; return ``False`` when nothing matched."""

        if session is None:
            return False
        handler = self.resolve(session.flow, session.phase)
        if handler is None:
            LOGGER.debug("no handler for %s/%s in chat %s", session.flow.value, session.phase.value, chat_id)
            return False
        handler(chat_id, payload, session)
        return True
