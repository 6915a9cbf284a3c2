import unittest


def _make_handler(**overrides):
    from pairlink.daemon.handler import ResponderActionHandler
    from pairlink.kernel.loop import KeyedTimers, ManualLoop
    from pairlink.kernel.settings import ConnectorSettings
    from pairlink.kernel.status import StatusBoard
    from pairlink.ports.capabilities import LoggingEffect

    background = overrides.pop("background_live", False)
    settings = ConnectorSettings(**overrides)
    loop = ManualLoop()
    timers = KeyedTimers(loop)
    board = StatusBoard(timers, lambda: "idle")
    effect = LoggingEffect()
    handler = ResponderActionHandler(effect, board, timers, background_live=lambda: background, settings=settings)
    return handler, effect, board, loop


class TestResponderActionHandler(unittest.TestCase):
    def test_live_vibrate_increments_once_and_acks_post_increment_count(self) -> None:
        from pairlink.contracts.v1 import AckStatus, Command

        handler, effect, _, _ = _make_handler()
        ack = handler.handle_live(Command(command_id="c1"))
        self.assertEqual(ack.status, AckStatus.SUCCESS)
        self.assertEqual(ack.vibration_count, 1)
        self.assertEqual(ack.command_id, "c1")
        self.assertEqual(handler.counters.vibration_count, 1)
        self.assertIsNotNone(handler.counters.last_vibrate_at)
        self.assertEqual(effect.performed, 1)

        ack2 = handler.handle_live(Command())
        self.assertEqual(ack2.vibration_count, 2)

    def test_unknown_action_is_inert(self) -> None:
        from pairlink.contracts.v1 import AckStatus, Command

        handler, effect, board, _ = _make_handler()
        handler.handle_live(Command())
        ack = handler.handle_live(Command(action="dance"))
        self.assertEqual(ack.status, AckStatus.UNKNOWN_ACTION)
        self.assertEqual(ack.vibration_count, 1)
        self.assertEqual(handler.counters.vibration_count, 1)
        self.assertEqual(handler.counters.unknown_count, 1)
        self.assertEqual(effect.performed, 1)

    def test_same_command_twice_counts_twice(self) -> None:
        from pairlink.contracts.v1 import Command

        handler, effect, _, _ = _make_handler()
        cmd = Command(command_id="dup")
        handler.handle_queued(cmd)
        handler.handle_queued(cmd)
        self.assertEqual(handler.counters.vibration_count, 2)
        self.assertEqual(effect.performed, 2)

    def test_dedup_window_suppresses_redelivery(self) -> None:
        from pairlink.contracts.v1 import AckStatus, Command

        handler, effect, _, loop = _make_handler(dedup_window_seconds=10.0)
        cmd = Command(command_id="dup")
        handler.handle_queued(cmd)
        ack = handler.handle_live(cmd)
        self.assertEqual(ack.status, AckStatus.SUCCESS)
        self.assertEqual(ack.vibration_count, 1)
        self.assertEqual(handler.counters.duplicate_count, 1)
        self.assertEqual(effect.performed, 1)

        loop.advance(11.0)
        handler.handle_queued(cmd)
        self.assertEqual(handler.counters.vibration_count, 2)

    def test_status_flashes_then_reverts(self) -> None:
        from pairlink.contracts.v1 import Command
        from pairlink.kernel.status import TEXT_PERFORMED

        handler, _, board, loop = _make_handler(status_reset_seconds=2.0)
        handler.handle_queued(Command())
        self.assertEqual(board.text, TEXT_PERFORMED)
        loop.advance(1.0)
        self.assertEqual(board.text, TEXT_PERFORMED)
        loop.advance(1.0)
        self.assertEqual(board.text, "idle")

    def test_secondary_pulse_is_not_counted(self) -> None:
        from pairlink.contracts.v1 import Command

        handler, effect, _, loop = _make_handler(secondary_pulse=True, secondary_pulse_delay_seconds=0.5)
        handler.handle_live(Command())
        self.assertEqual(effect.secondary, 0)
        loop.advance(0.5)
        self.assertEqual(effect.secondary, 1)
        self.assertEqual(effect.performed, 1)
        self.assertEqual(handler.counters.vibration_count, 1)

        handler2, effect2, _, loop2 = _make_handler(secondary_pulse=False)
        handler2.handle_live(Command())
        loop2.advance(5.0)
        self.assertEqual(effect2.secondary, 0)

    def test_incoming_live_replies_with_wire_ack(self) -> None:
        handler, _, _, _ = _make_handler(background_live=True)
        replies = []
        handler.handle_incoming({"action": "vibrate", "timestamp": 5.0, "command_id": "abc"}, "live", replies.append)
        self.assertEqual(len(replies), 1)
        wire = replies[0]
        self.assertEqual(wire["status"], "success")
        self.assertEqual(wire["vibrationCount"], 1)
        self.assertEqual(wire["delivery"], "immediate")
        self.assertTrue(wire["backgroundLive"])
        self.assertEqual(wire["command_id"], "abc")

    def test_incoming_live_with_out_of_range_timestamp_still_replies(self) -> None:
        handler, _, _, _ = _make_handler()
        replies = []
        handler.handle_incoming({"action": "vibrate", "timestamp": 10**400}, "live", replies.append)
        handler.handle_incoming({"action": "spin", "timestamp": 10**400}, "live", replies.append)
        self.assertEqual([r["status"] for r in replies], ["success", "unknown_action"])
        self.assertEqual(handler.counters.vibration_count, 1)

    def test_incoming_queued_malformed_payload_is_unknown(self) -> None:
        handler, effect, _, _ = _make_handler()
        handler.handle_incoming("not a mapping", "queued")
        handler.handle_incoming({"timestamp": 1.0}, "queued")
        self.assertEqual(handler.counters.vibration_count, 0)
        self.assertEqual(handler.counters.unknown_count, 2)
        self.assertEqual(effect.performed, 0)

    def test_message_event_routing(self) -> None:
        from pairlink.kernel.events import SessionEvent, SessionEventKind

        handler, _, _, _ = _make_handler()
        replies = []
        handler.on_message_event(
            SessionEvent(
                kind=SessionEventKind.MESSAGE_RECEIVED,
                data={"payload": {"action": "vibrate"}, "channel": "live", "reply": replies.append},
            )
        )
        handler.on_message_event(
            SessionEvent(kind=SessionEventKind.MESSAGE_RECEIVED, data={"payload": {"action": "vibrate"}, "channel": "queued"})
        )
        self.assertEqual(len(replies), 1)
        self.assertEqual(handler.counters.vibration_count, 2)


if __name__ == "__main__":
    unittest.main()
