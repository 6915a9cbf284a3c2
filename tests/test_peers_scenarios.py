import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout


class TestScenarios(unittest.TestCase):
    def test_a_live_ack_with_count_one(self) -> None:
        from pairlink.kernel.status import TEXT_SENT
        from pairlink.simulate import scenario_a

        out = scenario_a()
        self.assertEqual(out["outcome"]["channel"], "live")
        self.assertEqual(out["last_ack"]["status"], "success")
        self.assertEqual(out["last_ack"]["vibrationCount"], 1)
        self.assertEqual(out["vibration_count"], 1)
        self.assertTrue(out["controller_status"].startswith(TEXT_SENT))
        self.assertEqual(out["delivery"]["queued"], 0)

    def test_b_queued_then_reverts_to_derived_text(self) -> None:
        from pairlink.kernel.status import TEXT_QUEUED
        from pairlink.simulate import scenario_b

        out = scenario_b()
        self.assertEqual(out["outcome"]["channel"], "queued")
        self.assertIsNone(out["last_ack"])
        self.assertEqual(out["status_during_grace"], TEXT_QUEUED)
        self.assertEqual(out["controller_status"], "Responder not reachable (commands will be queued)")
        self.assertEqual(out["responder_status"], "Ready (controller away) · background on")

    def test_c_live_failure_delivers_exactly_once(self) -> None:
        from pairlink.simulate import scenario_c

        out = scenario_c()
        self.assertEqual(out["vibration_count"], 1)
        self.assertIsNone(out["last_ack"])
        self.assertEqual(out["delivery"]["live_failed"], 1)
        self.assertEqual(out["delivery"]["queued"], 1)

    def test_d_deactivation_reconnects(self) -> None:
        from pairlink.simulate import scenario_d

        out = scenario_d()
        self.assertEqual(out["after_deactivation"], "inactive")
        self.assertEqual(out["after_backoff"], "activated")
        self.assertEqual(out["reconnect"]["state"], "activated")
        self.assertEqual(out["reconnect"]["attempts"], 1)

    def test_e_unknown_action_is_inert(self) -> None:
        from pairlink.kernel.status import TEXT_REJECTED_BY_PEER
        from pairlink.simulate import scenario_e

        out = scenario_e()
        self.assertEqual(out["last_ack"]["status"], "unknown_action")
        self.assertEqual(out["last_ack"]["vibrationCount"], 0)
        self.assertEqual(out["vibration_count"], 0)
        self.assertEqual(out["controller_status"], TEXT_REJECTED_BY_PEER)

    def test_unknown_scenario(self) -> None:
        from pairlink.simulate import run_scenarios

        with self.assertRaises(ValueError):
            run_scenarios("Z")
        self.assertEqual(sorted(run_scenarios("all")), ["A", "B", "C", "D", "E"])


class TestFacades(unittest.TestCase):
    def test_controller_not_started_cannot_send(self) -> None:
        from pairlink.contracts.v1 import ErrorCode
        from pairlink.kernel.loop import ManualLoop
        from pairlink.peers import Controller
        from pairlink.ports.transport.loopback import LoopbackLink

        link = LoopbackLink()
        controller = Controller(link.controller, loop=ManualLoop())
        self.assertFalse(controller.can_send())
        self.assertEqual(controller.status_text, "Session not activated")
        outcome = controller.send_command()
        assert outcome.error is not None
        self.assertEqual(outcome.error.code, ErrorCode.SESSION_NOT_READY)
        self.assertEqual(link.controller.live_sent, [])
        self.assertEqual(link.controller.enqueued, [])

    def test_status_follows_session_transitions(self) -> None:
        from pairlink.contracts.v1 import PeerRole
        from pairlink.simulate import build_pair

        loop, link, controller, responder = build_pair()
        self.assertEqual(controller.status_text, "Ready")
        link.set_reachable(False)
        self.assertEqual(controller.status_text, "Responder not reachable (commands will be queued)")
        link.set_installed(PeerRole.RESPONDER, False)
        self.assertEqual(controller.status_text, "Responder app not installed")
        link.deactivate(PeerRole.CONTROLLER)
        self.assertEqual(controller.status_text, "Session inactive")

    def test_queued_waits_for_responder_activation(self) -> None:
        from pairlink.kernel.loop import ManualLoop
        from pairlink.peers import Controller, Responder
        from pairlink.ports.transport.loopback import LoopbackLink

        loop = ManualLoop()
        link = LoopbackLink()
        controller = Controller(link.controller, loop=loop)
        responder = Responder(link.responder, loop=loop)
        controller.start()
        self.assertFalse(controller.state.reachable)
        controller.send_command()
        self.assertEqual(link.pending_queued(responder.role), 1)
        self.assertEqual(responder.counters.vibration_count, 0)

        responder.start()
        self.assertEqual(link.pending_queued(responder.role), 0)
        self.assertEqual(responder.counters.vibration_count, 1)

    def test_redelivered_queued_command_double_counts(self) -> None:
        from pairlink.simulate import build_pair

        _, link, controller, responder = build_pair(reachable=False)
        link.redeliver_queued = True
        controller.send_command()
        self.assertEqual(responder.counters.vibration_count, 2)

    def test_uninstalled_responder_is_transport_rejected(self) -> None:
        from pairlink.contracts.v1 import ErrorCode, PeerRole
        from pairlink.simulate import build_pair

        _, link, controller, _ = build_pair(reachable=False)
        link.set_installed(PeerRole.RESPONDER, False)
        outcome = controller.send_command()
        self.assertFalse(outcome.ok)
        assert outcome.error is not None
        self.assertEqual(outcome.error.code, ErrorCode.TRANSPORT_REJECTED)
        self.assertEqual(controller.status_text, "Error: responder is not installed")

    def test_lost_live_reply_falls_back_and_double_counts(self) -> None:
        from pairlink.simulate import build_pair

        _, link, controller, responder = build_pair()
        link.drop_replies = True
        outcome = controller.send_command()
        self.assertTrue(outcome.ok)
        self.assertEqual(responder.counters.vibration_count, 2)
        self.assertIsNone(controller.last_ack)
        snap = controller.snapshot()
        self.assertEqual(snap["delivery"]["live_failed"], 1)
        self.assertEqual(snap["delivery"]["queued"], 1)
        self.assertTrue(snap["records"][-1]["fell_back"])
        self.assertEqual(snap["records"][-1]["outcome"], "queued")

    def test_dedup_window_absorbs_fallback_after_lost_reply(self) -> None:
        from pairlink.kernel.settings import ConnectorSettings
        from pairlink.simulate import build_pair

        _, link, controller, responder = build_pair(settings=ConnectorSettings(dedup_window_seconds=30.0))
        link.drop_replies = True
        controller.send_command()
        self.assertEqual(responder.counters.vibration_count, 1)
        self.assertEqual(responder.counters.duplicate_count, 1)
        self.assertEqual(controller.dispatcher.stats()["queued"], 1)

    def test_rejected_queued_channel_is_reported(self) -> None:
        from pairlink.contracts.v1 import ErrorCode
        from pairlink.simulate import build_pair

        _, link, controller, responder = build_pair(reachable=False)
        link.reject_queued = True
        outcome = controller.send_command()
        self.assertFalse(outcome.ok)
        assert outcome.error is not None
        self.assertEqual(outcome.error.code, ErrorCode.TRANSPORT_REJECTED)
        self.assertFalse(outcome.error.details["fell_back"])
        self.assertEqual(controller.status_text, "Error: queued channel rejected the payload")
        self.assertEqual(responder.counters.vibration_count, 0)

    def test_rejected_fallback_after_live_failure(self) -> None:
        from pairlink.contracts.v1 import ErrorCode
        from pairlink.simulate import build_pair

        _, link, controller, responder = build_pair()
        link.fail_next_live()
        link.reject_queued = True
        controller.send_command()
        err = controller.dispatcher.last_error
        assert err is not None
        self.assertEqual(err.code, ErrorCode.TRANSPORT_REJECTED)
        self.assertTrue(err.details["fell_back"])
        self.assertEqual(controller.dispatcher.records()[-1]["outcome"], "transport_rejected")
        self.assertEqual(controller.dispatcher.stats()["rejected"], 1)
        self.assertEqual(responder.counters.vibration_count, 0)

    def test_send_from_caller_thread_with_threaded_loops(self) -> None:
        import time

        from pairlink.kernel.settings import ConnectorSettings
        from pairlink.peers import Controller, Responder
        from pairlink.ports.transport.loopback import LoopbackLink

        settings = ConnectorSettings(secondary_pulse=False)
        link = LoopbackLink()
        responder = Responder(link.responder, settings=settings)
        controller = Controller(link.controller, settings=settings)
        try:
            deadline = time.monotonic() + 5.0
            responder.start()
            while time.monotonic() < deadline and not responder.state.activated:
                time.sleep(0.01)
            controller.start()
            while time.monotonic() < deadline and not (controller.can_send() and controller.state.reachable):
                time.sleep(0.01)
            self.assertTrue(controller.state.reachable)

            outcome = controller.send_command()
            self.assertTrue(outcome.ok)
            while time.monotonic() < deadline and controller.last_ack is None:
                time.sleep(0.01)
            ack = controller.last_ack
            assert ack is not None
            self.assertEqual(ack.vibration_count, 1)
            self.assertEqual(controller.dispatcher.records()[-1]["outcome"], "acked")
        finally:
            controller.close()
            responder.close()

    def test_snapshots(self) -> None:
        from pairlink.simulate import build_pair

        _, _, controller, responder = build_pair()
        controller.send_command()
        c = controller.snapshot()
        r = responder.snapshot()
        self.assertEqual(c["role"], "controller")
        self.assertEqual(c["session"]["activation"], "activated")
        self.assertEqual(c["last_ack"]["vibrationCount"], 1)
        self.assertEqual(len(c["records"]), 1)
        self.assertEqual(r["counters"]["vibration_count"], 1)
        self.assertEqual(r["liveness"], "active")
        json.dumps(c)
        json.dumps(r)


class TestCli(unittest.TestCase):
    def test_simulate_prints_json(self) -> None:
        from pairlink.cli import main

        old_home = os.environ.get("PAIRLINK_HOME")
        try:
            with tempfile.TemporaryDirectory() as td:
                os.environ["PAIRLINK_HOME"] = td
                buf = io.StringIO()
                with redirect_stdout(buf):
                    rc = main(["--log-level", "WARNING", "simulate", "--scenario", "A"])
                self.assertEqual(rc, 0)
                doc = json.loads(buf.getvalue())
                self.assertEqual(doc["A"]["vibration_count"], 1)
        finally:
            if old_home is None:
                os.environ.pop("PAIRLINK_HOME", None)
            else:
                os.environ["PAIRLINK_HOME"] = old_home

    def test_status_of_missing_pair(self) -> None:
        from pairlink.cli import main

        old_home = os.environ.get("PAIRLINK_HOME")
        try:
            with tempfile.TemporaryDirectory() as td:
                os.environ["PAIRLINK_HOME"] = td
                buf = io.StringIO()
                with redirect_stdout(buf):
                    rc = main(["status", "--pair", os.path.join(td, "none")])
                self.assertEqual(rc, 0)
                doc = json.loads(buf.getvalue())
                self.assertFalse(doc["exists"])
        finally:
            if old_home is None:
                os.environ.pop("PAIRLINK_HOME", None)
            else:
                os.environ["PAIRLINK_HOME"] = old_home


if __name__ == "__main__":
    unittest.main()
