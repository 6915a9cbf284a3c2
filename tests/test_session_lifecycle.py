import random
import unittest


def _make_session(*, supported: bool = True, fail_activate: str = ""):
    from pairlink.contracts.v1 import PeerRole
    from pairlink.kernel.events import EventChannel
    from pairlink.kernel.loop import ManualLoop
    from pairlink.kernel.session import SessionLifecycleManager
    from pairlink.ports.transport.base import PeerTransport, TransportError

    class _Transport(PeerTransport):
        transport_name = "test"

        def __init__(self) -> None:
            super().__init__(PeerRole.CONTROLLER)
            self.activate_calls = 0

        def is_supported(self) -> bool:
            return supported

        def activate(self) -> None:
            self.activate_calls += 1
            if fail_activate:
                raise TransportError(fail_activate)

        def teardown(self) -> None:
            pass

        def send_live(self, payload, *, on_reply, on_error) -> None:
            pass

        def enqueue(self, payload) -> None:
            pass

    loop = ManualLoop()
    events = EventChannel(loop)
    transport = _Transport()
    transport.bind(events)
    session = SessionLifecycleManager(transport, events, role=PeerRole.CONTROLLER)
    return session, transport, events


class TestSessionLifecycle(unittest.TestCase):
    def test_activate_is_idempotent(self) -> None:
        from pairlink.contracts.v1 import ActivationState

        session, transport, _ = _make_session()
        session.activate()
        session.activate()
        self.assertEqual(transport.activate_calls, 1)
        self.assertEqual(session.state.activation, ActivationState.ACTIVATING)

        session.on_activation_complete(ActivationState.ACTIVATED, peer_installed=True, reachable=True)
        session.activate()
        self.assertEqual(transport.activate_calls, 1)

    def test_unsupported_transport_is_error(self) -> None:
        from pairlink.contracts.v1 import ActivationState

        session, transport, _ = _make_session(supported=False)
        session.activate()
        self.assertEqual(transport.activate_calls, 0)
        self.assertEqual(session.state.activation, ActivationState.ERROR)
        self.assertEqual(session.derive_status_text(), "Session error: not supported")

    def test_transport_error_during_activate_is_state_not_exception(self) -> None:
        from pairlink.contracts.v1 import ActivationState

        session, _, _ = _make_session(fail_activate="radio off")
        session.activate()
        self.assertEqual(session.state.activation, ActivationState.ERROR)
        self.assertEqual(session.state.error, "radio off")

    def test_non_success_results_clear_reachable(self) -> None:
        from pairlink.contracts.v1 import ActivationState

        for result in (ActivationState.INACTIVE, ActivationState.NOT_ACTIVATED, ActivationState.ERROR, "activating", "garbage", None):
            session, _, _ = _make_session()
            session.on_activation_complete(ActivationState.ACTIVATED, peer_installed=True, reachable=True)
            self.assertTrue(session.state.reachable)
            session.on_activation_complete(result)
            self.assertFalse(session.state.reachable)
            self.assertNotEqual(session.state.activation, ActivationState.ACTIVATED)

    def test_unexpected_result_becomes_error(self) -> None:
        from pairlink.contracts.v1 import ActivationState

        session, _, _ = _make_session()
        session.on_activation_complete("activating")
        self.assertEqual(session.state.activation, ActivationState.ERROR)
        self.assertIn("unexpected activation result", session.state.error)

    def test_reachability_ignored_until_activated(self) -> None:
        from pairlink.contracts.v1 import ActivationState

        session, _, _ = _make_session()
        session.on_reachability_changed(True, peer_installed=True)
        self.assertFalse(session.state.reachable)
        self.assertFalse(session.state.peer_installed)

        session.on_activation_complete(ActivationState.ACTIVATED, peer_installed=True)
        session.on_reachability_changed(True)
        self.assertTrue(session.state.reachable)
        session.on_reachability_changed(False, peer_installed=False)
        self.assertFalse(session.state.reachable)
        self.assertFalse(session.state.peer_installed)

    def test_deactivation_clears_reachable_and_runs_hook(self) -> None:
        from pairlink.contracts.v1 import ActivationState

        session, _, _ = _make_session()
        calls = []
        session.set_deactivation_hook(lambda: calls.append(session.state.activation))
        session.on_activation_complete(ActivationState.ACTIVATED, peer_installed=True, reachable=True)
        session.on_deactivated()
        self.assertEqual(session.state.activation, ActivationState.INACTIVE)
        self.assertFalse(session.state.reachable)
        self.assertEqual(calls, [ActivationState.INACTIVE])

    def test_reset_returns_to_not_activated(self) -> None:
        from pairlink.contracts.v1 import ActivationState

        session, _, _ = _make_session()
        session.on_activation_complete(ActivationState.ACTIVATED, peer_installed=True, reachable=True)
        session.reset()
        self.assertEqual(session.state.activation, ActivationState.NOT_ACTIVATED)
        self.assertFalse(session.state.peer_installed)

    def test_listeners_see_old_and_new_and_failures_are_contained(self) -> None:
        from pairlink.contracts.v1 import ActivationState

        session, _, _ = _make_session()
        seen = []

        def bad(old, new) -> None:
            raise RuntimeError("listener bug")

        session.add_listener(bad)
        session.add_listener(lambda old, new: seen.append((old.activation, new.activation)))
        with self.assertLogs("pairlink.session", level="ERROR"):
            session.activate()
        self.assertEqual(seen, [(ActivationState.NOT_ACTIVATED, ActivationState.ACTIVATING)])

    def test_events_drive_transitions(self) -> None:
        from pairlink.contracts.v1 import ActivationState
        from pairlink.kernel.events import SessionEventKind

        session, _, events = _make_session()
        session.activate()
        events.publish(SessionEventKind.ACTIVATION_COMPLETE, state="activated", peer_installed=True, reachable=False)
        events.publish(SessionEventKind.REACHABILITY_CHANGED, reachable=True)
        self.assertTrue(session.state.reachable)
        events.publish(SessionEventKind.DEACTIVATED)
        self.assertEqual(session.state.activation, ActivationState.INACTIVE)
        self.assertFalse(session.state.reachable)

    def test_reachable_implies_activated_for_random_orderings(self) -> None:
        from pairlink.contracts.v1 import ActivationState

        rng = random.Random(20240611)
        results = [
            ActivationState.ACTIVATED,
            ActivationState.INACTIVE,
            ActivationState.NOT_ACTIVATED,
            ActivationState.ERROR,
            "activating",
            "nonsense",
        ]
        for _ in range(50):
            session, _, _ = _make_session()
            for _ in range(200):
                step = rng.randrange(5)
                if step == 0:
                    session.on_activation_complete(
                        rng.choice(results),
                        peer_installed=rng.random() < 0.5,
                        reachable=rng.random() < 0.5,
                    )
                elif step == 1:
                    session.on_reachability_changed(rng.random() < 0.5, peer_installed=rng.choice([None, True, False]))
                elif step == 2:
                    session.on_deactivated()
                elif step == 3:
                    session.activate()
                else:
                    session.reset()
                state = session.state
                if state.reachable:
                    self.assertEqual(state.activation, ActivationState.ACTIVATED)


class TestStatusLookup(unittest.TestCase):
    def test_controller_and_responder_texts(self) -> None:
        from pairlink.contracts.v1 import ActivationState, PeerRole, SessionState
        from pairlink.kernel.status import derive_session_text

        A = ActivationState
        rows = [
            (SessionState(), "Session not activated", "Session not activated"),
            (SessionState(activation=A.ACTIVATING), "Setting up connection...", "Setting up connection..."),
            (SessionState(activation=A.ACTIVATED), "Responder app not installed", "Controller app not installed"),
            (SessionState(activation=A.ACTIVATED, peer_installed=True, reachable=True), "Ready", "Ready"),
            (
                SessionState(activation=A.ACTIVATED, peer_installed=True),
                "Responder not reachable (commands will be queued)",
                "Ready (controller away)",
            ),
            (SessionState(activation=A.INACTIVE), "Session inactive", "Session inactive"),
            (SessionState(activation=A.ERROR, error="boom"), "Session error: boom", "Session error: boom"),
        ]
        for state, controller_text, responder_text in rows:
            self.assertEqual(derive_session_text(state, PeerRole.CONTROLLER), controller_text)
            self.assertEqual(derive_session_text(state, PeerRole.RESPONDER), responder_text)

    def test_responder_text_reports_liveness(self) -> None:
        from pairlink.contracts.v1 import ActivationState, LivenessState, SessionState
        from pairlink.kernel.status import derive_responder_text

        s = SessionState(activation=ActivationState.ACTIVATED, peer_installed=True, reachable=True)
        self.assertEqual(derive_responder_text(s, LivenessState.ACTIVE), "Ready · background on")
        self.assertEqual(derive_responder_text(s, LivenessState.DENIED), "Ready · background denied")
        self.assertEqual(derive_responder_text(s, LivenessState.NOT_REQUESTED), "Ready")


class TestStatusBoard(unittest.TestCase):
    def test_flash_reverts_to_derived_text(self) -> None:
        from pairlink.kernel.loop import KeyedTimers, ManualLoop
        from pairlink.kernel.status import StatusBoard

        loop = ManualLoop()
        board = StatusBoard(KeyedTimers(loop), lambda: "idle")
        changes = []
        board.add_listener(changes.append)
        board.flash("busy", 2.0)
        self.assertEqual(board.text, "busy")
        loop.advance(2.0)
        self.assertEqual(board.text, "idle")
        self.assertEqual(changes, ["busy", "idle"])

    def test_show_supersedes_pending_revert(self) -> None:
        from pairlink.kernel.loop import KeyedTimers, ManualLoop
        from pairlink.kernel.status import StatusBoard

        loop = ManualLoop()
        board = StatusBoard(KeyedTimers(loop, supersede=True), lambda: "idle")
        board.flash("busy", 2.0)
        board.show("failed")
        loop.advance(2.0)
        self.assertEqual(board.text, "failed")

    def test_clobbering_mode_lets_late_revert_win(self) -> None:
        from pairlink.kernel.loop import KeyedTimers, ManualLoop
        from pairlink.kernel.status import StatusBoard

        loop = ManualLoop()
        board = StatusBoard(KeyedTimers(loop, supersede=False), lambda: "idle")
        board.flash("busy", 2.0)
        board.show("failed")
        loop.advance(2.0)
        self.assertEqual(board.text, "idle")


if __name__ == "__main__":
    unittest.main()
