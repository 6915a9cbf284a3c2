from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable

from . import __version__
from .contracts.v1 import Command, PeerRole
from .kernel.settings import ConnectorSettings, load_settings
from .paths import default_pair_dir
from .peers import Controller, Responder
from .ports.capabilities import LocalLiveness, LoggingEffect
from .ports.transport.socket import LocalSocketTransport, describe_pair
from .simulate import SCENARIOS, run_scenarios
from .util.obslog import setup_root_json_logging


logger = logging.getLogger("pairlink.cli")


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _pair_dir(args: argparse.Namespace) -> Path:
    raw = str(getattr(args, "pair", "") or "").strip()
    return Path(raw).expanduser().resolve() if raw else default_pair_dir()


def _wait_for(pred: Callable[[], bool], timeout: float, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + max(0.0, timeout)
    while True:
        if pred():
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)


def cmd_simulate(args: argparse.Namespace, settings: ConnectorSettings) -> int:
    try:
        result = run_scenarios(args.scenario, settings)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    _print_json(result)
    return 0


def cmd_responder(args: argparse.Namespace, settings: ConnectorSettings) -> int:
    pair_dir = _pair_dir(args)
    transport = LocalSocketTransport(pair_dir, PeerRole.RESPONDER, settings=settings)
    responder = Responder(
        transport,
        effect=LoggingEffect(bell=bool(args.bell)),
        liveness=LocalLiveness(grant=not args.deny_liveness),
        settings=settings,
    )
    responder.board.add_listener(lambda text: print(f"[responder] {text}", flush=True))

    stop_event = threading.Event()

    def _signal_handler(signum: int, frame: Any) -> None:
        stop_event.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    logger.info("responder starting", extra={"pair": str(pair_dir)})
    responder.start(acquire_liveness=not args.no_liveness)
    print(f"[responder] {responder.status_text}", flush=True)
    try:
        while not stop_event.wait(0.5):
            pass
    finally:
        responder.close()
    _print_json(responder.snapshot())
    return 0


def cmd_send(args: argparse.Namespace, settings: ConnectorSettings) -> int:
    pair_dir = _pair_dir(args)
    controller = Controller(LocalSocketTransport(pair_dir, PeerRole.CONTROLLER, settings=settings), settings=settings)
    try:
        controller.start()
        _wait_for(lambda: controller.state.activation.value not in ("not_activated", "activating"), timeout=float(args.wait))
        outcome = controller.send_command(Command(action=str(args.action)))
        if outcome.ok and outcome.channel is not None and outcome.channel.value == "live":
            _wait_for(
                lambda: controller.last_ack is not None or controller.dispatcher.stats()["live_failed"] > 0,
                timeout=float(args.wait),
            )
        out = controller.snapshot()
        out["outcome"] = outcome.model_dump(mode="json")
        _print_json(out)
        return 0 if outcome.ok else 1
    finally:
        controller.close()


def cmd_status(args: argparse.Namespace, settings: ConnectorSettings) -> int:
    _print_json(describe_pair(_pair_dir(args)))
    return 0


def cmd_version(args: argparse.Namespace, settings: ConnectorSettings) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pairlink", description="Paired-session connector (controller -> responder)")
    p.add_argument("--log-level", default="", help="Root log level (default: settings.yaml log_level)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_sim = sub.add_parser("simulate", help="Run the in-process delivery scenarios and print JSON")
    p_sim.add_argument(
        "--scenario",
        default="all",
        choices=sorted(SCENARIOS) + ["all"],
        help="Scenario to run (default: all)",
    )
    p_sim.set_defaults(func=cmd_simulate)

    p_resp = sub.add_parser("responder", help="Run a responder on a pair directory until interrupted")
    p_resp.add_argument("--pair", default="", help="Pair directory (default: $PAIRLINK_HOME/pairs/default)")
    p_resp.add_argument("--no-liveness", action="store_true", help="Do not request background liveness")
    p_resp.add_argument("--deny-liveness", action="store_true", help="Simulate a denied liveness authorization")
    p_resp.add_argument("--bell", action="store_true", help="Ring the terminal bell on every pulse")
    p_resp.set_defaults(func=cmd_responder)

    p_send = sub.add_parser("send", help="Send one command to the responder of a pair directory")
    p_send.add_argument("--pair", default="", help="Pair directory (default: $PAIRLINK_HOME/pairs/default)")
    p_send.add_argument("--action", default="vibrate", help="Command action (default: vibrate)")
    p_send.add_argument("--wait", type=float, default=3.0, help="Seconds to wait for activation and ack (default: 3)")
    p_send.set_defaults(func=cmd_send)

    p_status = sub.add_parser("status", help="Show pair directory markers and channel state")
    p_status.add_argument("--pair", default="", help="Pair directory (default: $PAIRLINK_HOME/pairs/default)")
    p_status.set_defaults(func=cmd_status)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings()
    setup_root_json_logging(component="pairlink", level=args.log_level or settings.log_level)
    return int(args.func(args, settings))


if __name__ == "__main__":
    raise SystemExit(main())
