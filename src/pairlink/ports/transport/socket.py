"""
Cross-process transport over a shared pair directory.

Layout of <pair_dir>:
- responder.sock                live channel (JSON line request/response, owned by the responder)
- controller.installed          role marker + heartbeat
- responder.installed           role marker + heartbeat
- queue/responder.jsonl         queued channel spool (append-only)
- state/responder_queue_cursor.json

Live: the controller connects, writes one LinkRequest line and waits for one
LinkResponse line; a socket timeout is reported as a live failure.

Queued: the controller appends to the spool; the responder tails it with a
persisted byte cursor. The cursor is saved only after a batch has been
handed to the event channel, so a crash replays it (at-least-once).

Reachability: the controller pings the responder socket; the responder
checks the controller heartbeat is fresh. Installation comes from markers.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ...contracts.v1 import ActivationState, Channel, LinkRequest, LinkResponse, PeerRole
from ...kernel.events import SessionEventKind
from ...kernel.settings import ConnectorSettings, coerce_seconds
from ...util.fs import append_jsonl, atomic_write_json, read_json
from ...util.time import unix_now, unix_to_iso, utc_now_iso
from .base import ErrorCallback, PeerTransport, ReplyCallback, TransportError


logger = logging.getLogger("pairlink.transport")

_MAX_LINE = 2_000_000


def _recv_json_line(conn: socket.socket) -> Dict[str, Any]:
    buf = b""
    while b"\n" not in buf:
        chunk = conn.recv(65536)
        if not chunk:
            break
        buf += chunk
        if len(buf) > _MAX_LINE:
            break
    line = buf.split(b"\n", 1)[0]
    try:
        doc = json.loads(line.decode("utf-8", errors="replace"))
    except ValueError:
        return {}
    return doc if isinstance(doc, dict) else {}


def _send_json(conn: socket.socket, obj: Dict[str, Any]) -> None:
    conn.sendall((json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8"))


def _read_number(path: Path, key: str) -> float:
    """Non-negative number stored under key in a JSON doc; 0.0 when missing or garbled."""
    return coerce_seconds(read_json(path).get(key), default=0.0)


class PairPaths:
    def __init__(self, pair_dir: Path) -> None:
        self.root = Path(pair_dir)

    @property
    def sock_path(self) -> Path:
        return self.root / "responder.sock"

    def marker(self, role: PeerRole) -> Path:
        return self.root / f"{role.value}.installed"

    @property
    def queue_path(self) -> Path:
        return self.root / "queue" / "responder.jsonl"

    @property
    def cursor_path(self) -> Path:
        return self.root / "state" / "responder_queue_cursor.json"

    def pending_queued_bytes(self) -> int:
        try:
            size = self.queue_path.stat().st_size
        except FileNotFoundError:
            return 0
        return max(0, size - int(_read_number(self.cursor_path, "offset")))


def ping_socket(sock_path: Path, *, timeout_s: float = 0.3) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout_s)
            s.connect(str(sock_path))
            _send_json(s, LinkRequest(op="ping").model_dump())
            resp = LinkResponse.model_validate(_recv_json_line(s))
            return resp.ok
    except (OSError, ValueError):
        return False


class QueueCursor:
    """Byte offset into the spool, persisted as JSON."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.offset = int(_read_number(path, "offset"))

    def read_new(self, spool: Path) -> Tuple[List[Dict[str, Any]], int]:
        """Return (complete records after the cursor, offset after them)."""
        if not spool.exists():
            return [], self.offset
        size = spool.stat().st_size
        if size < self.offset:
            # Truncated/replaced spool: start over.
            self.offset = 0
        if size == self.offset:
            return [], self.offset
        with spool.open("rb") as f:
            f.seek(self.offset)
            chunk = f.read()
        records: List[Dict[str, Any]] = []
        consumed = 0
        for raw in chunk.splitlines(keepends=True):
            if not raw.endswith(b"\n"):
                break
            consumed += len(raw)
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                doc = json.loads(text)
            except ValueError:
                logger.warning("skipping malformed spool line", extra={"channel": Channel.QUEUED.value})
                continue
            if isinstance(doc, dict):
                records.append(doc)
        return records, self.offset + consumed

    def commit(self, offset: int) -> None:
        self.offset = offset
        atomic_write_json(self.path, {"offset": offset, "updated_at": utc_now_iso()})


class LocalSocketTransport(PeerTransport):
    transport_name = "socket"

    def __init__(self, pair_dir: Path, role: PeerRole, *, settings: Optional[ConnectorSettings] = None) -> None:
        super().__init__(role)
        self.paths = PairPaths(pair_dir)
        self.settings = settings or ConnectorSettings()
        self._lock = threading.Lock()
        self._stop: Optional[threading.Event] = None
        self._server: Optional[socket.socket] = None
        self._last_probe: Optional[Tuple[bool, bool]] = None

    def is_supported(self) -> bool:
        return hasattr(socket, "AF_UNIX")

    # ------------------------------------------------------------------
    # Session handle
    # ------------------------------------------------------------------

    def activate(self) -> None:
        with self._lock:
            if self._stop is not None:
                self._stop.set()
            stop = threading.Event()
            self._stop = stop
            self._last_probe = None
        self._close_server()
        threading.Thread(target=self._activate_worker, args=(stop,), name=f"pairlink-{self.role.value}-activate", daemon=True).start()

    def teardown(self) -> None:
        with self._lock:
            stop, self._stop = self._stop, None
        if stop is not None:
            stop.set()
        self._close_server()

    def _close_server(self, server: Optional[socket.socket] = None) -> None:
        """Close the live listener; the socket file is removed only for the current one."""
        with self._lock:
            owned = server is None or server is self._server
            if owned:
                server, self._server = self._server, None
        if server is None:
            return
        try:
            server.close()
        except OSError:
            pass
        if not owned:
            return
        # Only the responder serves, so only it owns the socket file.
        try:
            self.paths.sock_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("could not remove socket: %s", e, extra={"role": self.role.value})

    def _activate_worker(self, stop: threading.Event) -> None:
        try:
            self.paths.root.mkdir(parents=True, exist_ok=True)
            self._write_marker()
            if self.role is PeerRole.RESPONDER:
                self._open_server(stop)
        except OSError as e:
            logger.warning("activation failed: %s", e, extra={"role": self.role.value})
            self._emit(SessionEventKind.ACTIVATION_COMPLETE, state=ActivationState.ERROR.value, error=str(e))
            return
        if stop.is_set():
            return
        installed, reachable = self._probe()
        self._last_probe = (installed, reachable)
        self._emit(
            SessionEventKind.ACTIVATION_COMPLETE,
            state=ActivationState.ACTIVATED.value,
            peer_installed=installed,
            reachable=reachable and installed,
        )
        threading.Thread(target=self._probe_loop, args=(stop,), name=f"pairlink-{self.role.value}-probe", daemon=True).start()
        if self.role is PeerRole.RESPONDER:
            threading.Thread(target=self._queue_loop, args=(stop,), name="pairlink-responder-queue", daemon=True).start()

    def _write_marker(self) -> None:
        atomic_write_json(
            self.paths.marker(self.role),
            {"role": self.role.value, "pid": os.getpid(), "heartbeat": unix_now(), "ts": utc_now_iso()},
        )

    # ------------------------------------------------------------------
    # Reachability
    # ------------------------------------------------------------------

    def _probe(self) -> Tuple[bool, bool]:
        counterpart = self.role.counterpart
        marker = self.paths.marker(counterpart)
        installed = marker.exists()
        if self.role is PeerRole.CONTROLLER:
            reachable = ping_socket(self.paths.sock_path)
        else:
            heartbeat = _read_number(marker, "heartbeat")
            reachable = installed and (unix_now() - heartbeat) <= 3 * self.settings.probe_interval_seconds
        return installed, reachable

    def _probe_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.settings.probe_interval_seconds):
            if not self.paths.root.exists():
                logger.warning("pair directory vanished", extra={"role": self.role.value})
                stop.set()
                self._close_server()
                self._emit(SessionEventKind.DEACTIVATED)
                return
            try:
                self._write_marker()
            except OSError as e:
                logger.warning("heartbeat failed: %s", e, extra={"role": self.role.value})
            try:
                probe = self._probe()
            except Exception:
                logger.exception("reachability probe failed", extra={"role": self.role.value})
                continue
            if probe != self._last_probe:
                self._last_probe = probe
                installed, reachable = probe
                self._emit(SessionEventKind.REACHABILITY_CHANGED, reachable=reachable and installed, peer_installed=installed)

    # ------------------------------------------------------------------
    # Live channel
    # ------------------------------------------------------------------

    def send_live(self, payload: Dict[str, Any], *, on_reply: ReplyCallback, on_error: ErrorCallback) -> None:
        if self.role is not PeerRole.CONTROLLER:
            self._marshal(on_error, "live channel only runs controller -> responder")
            return
        threading.Thread(
            target=self._live_round_trip,
            args=(dict(payload), on_reply, on_error),
            name="pairlink-live-send",
            daemon=True,
        ).start()

    def _live_round_trip(self, payload: Dict[str, Any], on_reply: ReplyCallback, on_error: ErrorCallback) -> None:
        req = LinkRequest(op="command", payload=payload)
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
                s.settimeout(self.settings.live_timeout_seconds)
                s.connect(str(self.paths.sock_path))
                _send_json(s, req.model_dump())
                resp = LinkResponse.model_validate(_recv_json_line(s))
        except (OSError, ValueError) as e:
            self._marshal(on_error, f"live send failed: {e}")
            return
        if resp.ok:
            self._marshal(on_reply, resp.result)
        else:
            self._marshal(on_error, resp.error or "live send refused")

    def _open_server(self, stop: threading.Event) -> None:
        sock_path = self.paths.sock_path
        if sock_path.exists():
            if ping_socket(sock_path):
                raise OSError(f"another responder is serving {sock_path}")
            sock_path.unlink()
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        server.bind(str(sock_path))
        server.listen(16)
        server.settimeout(0.5)
        with self._lock:
            self._server = server
        threading.Thread(target=self._accept_loop, args=(server, stop), name="pairlink-responder-live", daemon=True).start()

    def _accept_loop(self, server: socket.socket, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                conn, _ = server.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if stop.is_set():
                    return
                logger.warning("live listener failed: %s", e, extra={"role": self.role.value})
                stop.set()
                self._close_server(server)
                self._emit(SessionEventKind.DEACTIVATED)
                return
            threading.Thread(target=self._serve_conn, args=(conn,), name="pairlink-responder-conn", daemon=True).start()

    def _serve_conn(self, conn: socket.socket) -> None:
        with conn:
            conn.settimeout(self.settings.live_timeout_seconds)
            try:
                raw = _recv_json_line(conn)
                try:
                    req = LinkRequest.model_validate(raw)
                except ValueError as e:
                    _send_json(conn, LinkResponse(ok=False, error=f"invalid request: {e}").model_dump())
                    return
                if req.op == "ping":
                    _send_json(conn, LinkResponse(ok=True, result={"role": self.role.value}).model_dump())
                    return
                _send_json(conn, self._dispatch_live(req.payload).model_dump())
            except OSError as e:
                logger.info("live connection dropped: %s", e, extra={"channel": Channel.LIVE.value})

    def _dispatch_live(self, payload: Dict[str, Any]) -> LinkResponse:
        done = threading.Event()
        holder: Dict[str, Any] = {}

        def _reply(ack: Dict[str, Any]) -> None:
            if done.is_set():
                return
            holder["ack"] = dict(ack)
            done.set()

        self._emit(SessionEventKind.MESSAGE_RECEIVED, payload=payload, channel=Channel.LIVE.value, reply=_reply)
        if not done.wait(self.settings.live_timeout_seconds):
            return LinkResponse(ok=False, error="responder did not reply in time")
        return LinkResponse(ok=True, result=holder["ack"])

    # ------------------------------------------------------------------
    # Queued channel
    # ------------------------------------------------------------------

    def enqueue(self, payload: Dict[str, Any]) -> None:
        if self.role is not PeerRole.CONTROLLER:
            raise TransportError("queued channel only runs controller -> responder")
        if not self.paths.marker(PeerRole.RESPONDER).exists():
            raise TransportError("responder is not installed")
        try:
            append_jsonl(self.paths.queue_path, {"v": 1, "ts": utc_now_iso(), "payload": dict(payload)})
        except OSError as e:
            raise TransportError(f"queued channel write failed: {e}") from e

    def _queue_loop(self, stop: threading.Event) -> None:
        cursor = QueueCursor(self.paths.cursor_path)
        while not stop.is_set():
            try:
                records, offset = cursor.read_new(self.paths.queue_path)
                for rec in records:
                    payload = rec.get("payload")
                    self._emit(
                        SessionEventKind.MESSAGE_RECEIVED,
                        payload=payload if isinstance(payload, dict) else {},
                        channel=Channel.QUEUED.value,
                    )
                if offset != cursor.offset:
                    cursor.commit(offset)
            except OSError as e:
                logger.warning("queued channel read failed: %s", e, extra={"channel": Channel.QUEUED.value})
            stop.wait(self.settings.queue_poll_interval_seconds)


def describe_pair(pair_dir: Path) -> Dict[str, Any]:
    """Snapshot of a pair directory for `pairlink status`."""
    paths = PairPaths(pair_dir)
    out: Dict[str, Any] = {"pair_dir": str(paths.root), "exists": paths.root.exists()}
    for role in PeerRole:
        marker = read_json(paths.marker(role))
        hb = coerce_seconds(marker.get("heartbeat"), default=0.0)
        out[role.value] = {
            "installed": paths.marker(role).exists(),
            "pid": marker.get("pid"),
            "heartbeat_age_s": round(unix_now() - hb, 3) if hb else None,
            "heartbeat_at": unix_to_iso(hb) if hb else "",
        }
    out["live_socket_alive"] = ping_socket(paths.sock_path) if paths.sock_path.exists() else False
    out["queued_pending_bytes"] = paths.pending_queued_bytes()
    return out
