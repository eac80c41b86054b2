"""Tests for the session store and the flow dispatcher."""
import gc

import pytest
from unittest.mock import Mock

from vpn_store.flows import Dispatcher, FlowKind, Phase
from vpn_store.sessions import Session, SessionStore


class TestSessionStore:
    """Test session lifecycle and generation-guarded expiry."""

    def test_start_and_get(self, timers):
        """Test a started session is returned with its data."""
        store = SessionStore(timer_factory=timers)
        store.start(7, FlowKind.SERVICE, Phase.USERNAME, action="create")
        session = store.get(7)
        assert session.flow is FlowKind.SERVICE
        assert session.data == {"action": "create"}

    def test_new_session_gets_new_generation(self, timers):
        """Test replacing a session bumps the generation."""
        store = SessionStore(timer_factory=timers)
        first = store.start(7, FlowKind.BROADCAST, Phase.TEXT)
        second = store.start(7, FlowKind.BROADCAST, Phase.TEXT)
        assert second.generation > first.generation

    def test_advance_keeps_generation(self, timers):
        """Test moving to the next phase keeps pending timers valid."""
        store = SessionStore(timer_factory=timers)
        session = store.start(7, FlowKind.SERVICE, Phase.USERNAME)
        advanced = store.advance(7, Phase.DURATION, username="alice")
        assert advanced.generation == session.generation
        assert advanced.data["username"] == "alice"

    def test_stale_timer_does_not_clear_newer_session(self, timers):
        """Test an old expiry timer leaves a newer session alone."""
        store = SessionStore(timer_factory=timers)
        callback = Mock()
        store.start(7, FlowKind.LEVEL_CHANGE, Phase.TEXT)
        store.expire_after(7, 30, callback)
        stale = timers.last
        store.start(7, FlowKind.PROMOTE_RESELLER, Phase.TEXT)

        stale.fire()

        assert store.get(7).flow is FlowKind.PROMOTE_RESELLER
        callback.assert_not_called()

    def test_current_timer_expires_session(self, timers):
        """Test the timer armed for the current session removes it and calls back."""
        store = SessionStore(timer_factory=timers)
        callback = Mock()
        store.start(7, FlowKind.BROADCAST, Phase.TEXT)
        store.expire_after(7, 30, callback)
        assert timers.last.interval == 30
        assert timers.last.daemon is True

        timers.last.fire()

        assert store.get(7) is None
        callback.assert_called_once()
        assert callback.call_args[0][0] == 7

    def test_timer_callback_failure_is_logged(self, timers):
        """Test a failing expiry callback does not propagate."""
        store = SessionStore(timer_factory=timers)
        store.start(7, FlowKind.BROADCAST, Phase.TEXT)
        store.expire_after(7, 30, Mock(side_effect=RuntimeError("boom")))
        timers.last.fire()
        assert store.get(7) is None

    def test_update_returning_none_deletes(self, timers):
        """Test update can remove a session atomically."""
        store = SessionStore(timer_factory=timers)
        store.start(7, FlowKind.SERVICE, Phase.USERNAME)
        assert store.update(7, lambda session: None) is None
        assert store.get(7) is None

    def test_update_without_session(self, timers):
        """Test update is a no-op when nothing is stored."""
        store = SessionStore(timer_factory=timers)
        fn = Mock()
        assert store.update(7, fn) is None
        fn.assert_not_called()

    def test_update_with_replacement_bumps_generation(self, timers):
        """Test returning a new session object assigns a new generation."""
        store = SessionStore(timer_factory=timers)
        original = store.start(7, FlowKind.SERVICE, Phase.USERNAME)
        replaced = store.update(7, lambda s: Session(FlowKind.DEPOSIT, Phase.KEYPAD))
        assert replaced.generation > original.generation

    def test_delete_with_stale_generation(self, timers):
        """Test delete refuses to remove a session that was replaced."""
        store = SessionStore(timer_factory=timers)
        old = store.start(7, FlowKind.SERVICE, Phase.USERNAME)
        store.start(7, FlowKind.DEPOSIT, Phase.KEYPAD)
        assert store.delete(7, old.generation) is False
        assert store.delete(7) is True
        assert len(store) == 0

    def test_lock_is_per_chat_and_reentrant(self, timers):
        """Test each chat gets one reentrant lock."""
        store = SessionStore(timer_factory=timers)
        assert store.lock(1) is store.lock(1)
        assert store.lock(1) is not store.lock(2)
        with store.lock(1):
            with store.lock(1):
                store.start(1, FlowKind.SERVICE, Phase.USERNAME)
        assert store.get(1) is not None

    def test_locks_do_not_accumulate(self, timers):
        """Test chats that came and went leave no lock behind."""
        store = SessionStore(timer_factory=timers)
        for chat_id in range(100):
            store.start(chat_id, FlowKind.SERVICE, Phase.USERNAME)
            store.delete(chat_id)
        gc.collect()
        assert len(store._locks) == 0

    def test_held_lock_survives(self, timers):
        """Test a lock stays the same while a caller holds it."""
        store = SessionStore(timer_factory=timers)
        held = store.lock(3)
        with held:
            gc.collect()
            assert store.lock(3) is held


class TestDispatcher:
    """Test routing of input to flow handlers."""

    def test_exact_match(self):
        """Test the handler registered for the exact pair is called."""
        dispatcher = Dispatcher()
        handler = Mock()
        dispatcher.register(FlowKind.SERVICE, Phase.USERNAME, handler)
        session = Session(FlowKind.SERVICE, Phase.USERNAME)
        assert dispatcher.dispatch(5, {"text": "x"}, session) is True
        handler.assert_called_once_with(5, {"text": "x"}, session)

    def test_wildcard_phase(self):
        """Test a flow-wide handler catches every phase of that flow."""
        dispatcher = Dispatcher()
        handler = Mock()
        dispatcher.register(FlowKind.ADD_SERVER, None, handler)
        assert dispatcher.dispatch(5, {}, Session(FlowKind.ADD_SERVER, Phase.PRICE)) is True

    def test_no_cross_flow_match(self):
        """Test a handler for one flow never receives another flow's input."""
        dispatcher = Dispatcher()
        handler = Mock()
        dispatcher.register(FlowKind.DEPOSIT, Phase.PROOF_UPLOAD, handler)
        assert dispatcher.dispatch(5, {}, Session(FlowKind.SERVICE, Phase.PROOF_UPLOAD)) is False
        assert dispatcher.dispatch(5, {}, None) is False
        handler.assert_not_called()

    def test_duplicate_registration(self):
        """Test registering the same pair twice is rejected."""
        dispatcher = Dispatcher()
        dispatcher.register(FlowKind.BROADCAST, Phase.TEXT, Mock())
        with pytest.raises(ValueError):
            dispatcher.register(FlowKind.BROADCAST, Phase.TEXT, Mock())
