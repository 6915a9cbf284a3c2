"""In-process scenarios over the loopback link.

Both peers share one ManualLoop, so every scenario is deterministic: posts
run inline and timers fire only when the virtual clock is advanced.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Tuple

from .contracts.v1 import Command, PeerRole
from .kernel.loop import ManualLoop
from .kernel.settings import ConnectorSettings
from .peers import Controller, Responder
from .ports.capabilities import LoggingEffect
from .ports.transport.loopback import LoopbackLink


Pair = Tuple[ManualLoop, LoopbackLink, Controller, Responder]


def build_pair(*, reachable: bool = True, settings: Optional[ConnectorSettings] = None) -> Pair:
    """Construct and activate a controller/responder pair on one manual loop."""
    settings = settings or ConnectorSettings()
    loop = ManualLoop()
    link = LoopbackLink(reachable=reachable)
    responder = Responder(link.responder, effect=LoggingEffect(), loop=loop, settings=settings)
    controller = Controller(link.controller, loop=loop, settings=settings)
    responder.start()
    controller.start()
    return loop, link, controller, responder


def _summary(controller: Controller, responder: Responder) -> Dict[str, Any]:
    ack = controller.last_ack
    return {
        "controller_status": controller.status_text,
        "responder_status": responder.status_text,
        "vibration_count": responder.counters.vibration_count,
        "last_ack": ack.to_wire() if ack is not None else None,
        "delivery": controller.dispatcher.stats(),
    }


def scenario_a(settings: Optional[ConnectorSettings] = None) -> Dict[str, Any]:
    """Reachable responder: live delivery, ack with count 1."""
    loop, _, controller, responder = build_pair(reachable=True, settings=settings)
    outcome = controller.send_command()
    out = {"outcome": outcome.model_dump(mode="json")}
    out.update(_summary(controller, responder))
    return out


def scenario_b(settings: Optional[ConnectorSettings] = None) -> Dict[str, Any]:
    """Unreachable responder: queued delivery, optimistic text, revert after the grace period."""
    loop, _, controller, responder = build_pair(reachable=False, settings=settings)
    outcome = controller.send_command()
    during = controller.status_text
    loop.advance(controller.settings.queued_grace_seconds)
    out = {"outcome": outcome.model_dump(mode="json"), "status_during_grace": during}
    out.update(_summary(controller, responder))
    return out


def scenario_c(settings: Optional[ConnectorSettings] = None) -> Dict[str, Any]:
    """Live send fails mid-flight: falls back to queued, delivered once."""
    loop, link, controller, responder = build_pair(reachable=True, settings=settings)
    link.fail_next_live("peer became unreachable")
    outcome = controller.send_command()
    out = {"outcome": outcome.model_dump(mode="json")}
    out.update(_summary(controller, responder))
    return out


def scenario_d(settings: Optional[ConnectorSettings] = None) -> Dict[str, Any]:
    """Deactivation: one re-activation after the backoff."""
    loop, link, controller, responder = build_pair(reachable=True, settings=settings)
    link.deactivate(PeerRole.CONTROLLER)
    after_deactivation = controller.state.activation.value
    loop.advance(controller.settings.reconnect_delay_seconds)
    out = {
        "after_deactivation": after_deactivation,
        "after_backoff": controller.state.activation.value,
        "reconnect": controller.supervisor.snapshot(),
    }
    out.update(_summary(controller, responder))
    return out


def scenario_e(settings: Optional[ConnectorSettings] = None) -> Dict[str, Any]:
    """Unknown action on the live channel: inert, UnknownAction ack."""
    loop, _, controller, responder = build_pair(reachable=True, settings=settings)
    outcome = controller.send_command(Command(action="dance"))
    out = {"outcome": outcome.model_dump(mode="json")}
    out.update(_summary(controller, responder))
    return out


SCENARIOS: Dict[str, Callable[[Optional[ConnectorSettings]], Dict[str, Any]]] = {
    "A": scenario_a,
    "B": scenario_b,
    "C": scenario_c,
    "D": scenario_d,
    "E": scenario_e,
}


def run_scenarios(name: str = "all", settings: Optional[ConnectorSettings] = None) -> Dict[str, Any]:
    key = str(name or "all").strip().upper()
    if key == "ALL":
        return {k: fn(settings) for k, fn in SCENARIOS.items()}
    fn = SCENARIOS.get(key)
    if fn is None:
        raise ValueError(f"unknown scenario: {name}")
    return {key: fn(settings)}
