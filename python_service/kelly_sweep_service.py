#!/usr/bin/env python3
from __future__ import annotations

import argparse
import datetime as dt
import json
import math
import multiprocessing as mp
import os
import pathlib
import queue as queue_mod
import secrets
import signal
import sys
import threading
import traceback
import uuid
from dataclasses import dataclass, field
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from kelly_sweep import (  # noqa: E402
    DEFAULT_CONFIG,
    GridConfigurationError,
    _deep_merge,
    preview_grid,
    resolve_param_names,
    run_kelly_sweep,
    validate_config,
)
from strategy_compiler import check_strategy  # noqa: E402


TERMINAL_STATUSES = {"completed", "failed", "cancelled"}
MAX_EVENTS_PER_RUN = 8_000


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]
    if hasattr(value, "tolist") and callable(value.tolist):
        return _to_jsonable(value.tolist())
    if hasattr(value, "item") and callable(value.item):
        value = value.item()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _run_worker(config: dict[str, Any], out_queue: mp.Queue) -> None:
    def progress_callback(event: str, payload: dict[str, Any]) -> None:
        out_queue.put(
            {
                "kind": "progress",
                "event": str(event),
                "payload": _to_jsonable(payload),
                "timestamp": _now_iso(),
            }
        )

    try:
        result = run_kelly_sweep(
            config=config,
            verbose=False,
            progress_callback=progress_callback,
        )
        out_queue.put({"kind": "result", "result": _to_jsonable(result), "timestamp": _now_iso()})
    except Exception as exc:
        out_queue.put(
            {
                "kind": "error",
                "error": str(exc),
                "error_type": type(exc).__name__,
                "traceback": traceback.format_exc(),
                "timestamp": _now_iso(),
            }
        )


def _run_process_main(config: dict[str, Any], out_queue: mp.Queue) -> None:
    # SIGTERM unwinds the sweep, whose cleanup stops its own worker processes.
    def _terminate(signum: int, _frame: Any) -> None:
        raise SystemExit(128 + signum)

    signal.signal(signal.SIGTERM, _terminate)
    _run_worker(config, out_queue)


def _stop_run_process(process: Optional[mp.Process], timeout: float) -> None:
    if process is None or not process.is_alive():
        return
    process.terminate()
    process.join(timeout=timeout)
    if process.is_alive():
        process.kill()
        process.join(timeout=1.0)


@dataclass
class RunRecord:
    run_id: str
    config: dict[str, Any]
    created_at: str
    status: str = "queued"
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    cancel_requested: bool = False
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    traceback: Optional[str] = None
    events: list[dict[str, Any]] = field(default_factory=list)
    next_seq: int = 1
    process: Optional[mp.Process] = None
    queue: Optional[mp.Queue] = None
    lock: threading.RLock = field(default_factory=threading.RLock)
    condition: threading.Condition = field(init=False)

    def __post_init__(self) -> None:
        self.condition = threading.Condition(self.lock)

    def append_event(self, event: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        with self.condition:
            item = {
                "seq": self.next_seq,
                "timestamp": _now_iso(),
                "event": str(event),
                "payload": _to_jsonable(payload or {}),
            }
            self.next_seq += 1
            self.events.append(item)
            del self.events[:-MAX_EVENTS_PER_RUN]
            self.condition.notify_all()
            return item

    def events_after(self, seq: int) -> list[dict[str, Any]]:
        with self.lock:
            return [event for event in self.events if event["seq"] > seq]

    def wait_for_event(self, seq: int, timeout: float) -> bool:
        with self.condition:
            return self.condition.wait_for(lambda: bool(self.events) and self.events[-1]["seq"] > seq, timeout)

    def is_terminal(self) -> bool:
        with self.lock:
            return self.status in TERMINAL_STATUSES

    def snapshot(self, include_result: bool = True) -> dict[str, Any]:
        with self.lock:
            latest = self.events[-1] if self.events else {"seq": 0, "event": ""}
            return {
                "run_id": self.run_id,
                "status": self.status,
                "created_at": self.created_at,
                "started_at": self.started_at,
                "finished_at": self.finished_at,
                "cancel_requested": self.cancel_requested,
                "error": self.error,
                "error_type": self.error_type,
                "traceback": self.traceback,
                "result": self.result if include_result else None,
                "latest_seq": latest["seq"],
                "latest_event": latest["event"],
            }


class RunManager:
    """Owns at most one active sweep, each hosted in its own process."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._runs: dict[str, RunRecord] = {}
        self._active_run_id: Optional[str] = None

    def active_run_id(self) -> Optional[str]:
        with self._lock:
            record = self._runs.get(self._active_run_id) if self._active_run_id else None
            if record is None or record.is_terminal():
                return None
            return record.run_id

    def create_run(self, config: dict[str, Any]) -> tuple[Optional[RunRecord], Optional[str]]:
        with self._lock:
            if self.active_run_id() is not None:
                return None, "A run is already active. Cancel or wait for completion before starting another."
            record = RunRecord(run_id=uuid.uuid4().hex, config=_to_jsonable(config), created_at=_now_iso())
            self._runs[record.run_id] = record
            self._active_run_id = record.run_id

        # Not daemonic: the sweep starts worker processes of its own.
        record.queue = mp.Queue()
        record.process = mp.Process(target=_run_process_main, args=(config, record.queue))
        record.process.start()
        with record.lock:
            record.started_at = _now_iso()
            record.status = "running"
        record.append_event("service_run_started", {"pid": record.process.pid})

        threading.Thread(target=self._monitor_run, args=(record,), daemon=True).start()
        return record, None

    def _finish(self, record: RunRecord, status: str, event: str, payload: dict[str, Any]) -> None:
        with record.lock:
            record.status = status
            if record.finished_at is None:
                record.finished_at = _now_iso()
            record.append_event(event, payload)
        with self._lock:
            if self._active_run_id == record.run_id:
                self._active_run_id = None

    def _handle_message(self, record: RunRecord, message: dict[str, Any]) -> bool:
        kind = message.get("kind")
        if kind == "progress":
            record.append_event(str(message.get("event", "progress")), message.get("payload") or {})
            return False
        if kind == "result":
            with record.lock:
                record.result = _to_jsonable(message.get("result"))
            self._finish(record, "completed", "service_run_complete", {"status": "completed"})
            return True
        if kind == "error":
            with record.lock:
                record.error = str(message.get("error", "Unknown run error"))
                record.error_type = message.get("error_type")
                record.traceback = message.get("traceback")
            self._finish(record, "failed", "service_run_failed", {"error": record.error})
            return True
        return False

    def _handle_exit(self, record: RunRecord, exit_code: Optional[int]) -> None:
        if record.is_terminal():
            return
        if record.cancel_requested:
            self._finish(record, "cancelled", "service_run_cancelled", {"exit_code": exit_code})
            return
        with record.lock:
            record.error = f"Run process exited unexpectedly with code {exit_code}."
            record.error_type = "WorkerTransportError"
        self._finish(record, "failed", "service_run_failed", {"error": record.error})

    def _monitor_run(self, record: RunRecord) -> None:
        process = record.process
        out_queue = record.queue

        while True:
            try:
                message = out_queue.get(timeout=0.25)
            except queue_mod.Empty:
                if process.is_alive():
                    continue
                # The final message may still be in the pipe after exit.
                try:
                    message = out_queue.get(timeout=0.25)
                except queue_mod.Empty:
                    self._handle_exit(record, process.exitcode)
                    break
            if self._handle_message(record, message):
                break

        process.join(timeout=2.0)
        out_queue.close()

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return self._runs.get(run_id)

    def cancel_run(self, run_id: str) -> tuple[bool, str]:
        record = self.get_run(run_id)
        if record is None:
            return False, "Run not found."

        with record.lock:
            if record.status in TERMINAL_STATUSES:
                return False, f"Run is already {record.status}."
            record.cancel_requested = True
            record.status = "cancel_requested"
        record.append_event("service_cancel_requested", {})

        _stop_run_process(record.process, timeout=5.0)
        return True, "Cancellation signal sent."

    def shutdown(self) -> None:
        with self._lock:
            records = list(self._runs.values())
        for record in records:
            _stop_run_process(record.process, timeout=2.0)


def _merged_config(payload: dict[str, Any]) -> dict[str, Any]:
    raw_config = payload.get("config", {})
    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise GridConfigurationError("config must be a JSON object.")
    merged = _deep_merge(DEFAULT_CONFIG, raw_config)
    validate_config(merged)
    return merged


def handle_preview(payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
    try:
        merged = _merged_config(payload)
    except GridConfigurationError as exc:
        return HTTPStatus.BAD_REQUEST, {"error": str(exc)}
    limit = payload.get("limit", 10)
    if not isinstance(limit, int) or isinstance(limit, bool) or limit < 0:
        return HTTPStatus.BAD_REQUEST, {"error": "limit must be an int >= 0."}
    preview = preview_grid(merged["parameters"], limit=limit)
    preview["confirm_required"] = preview["grid_size"] > merged["simulation"]["confirm_grid_size"]
    return HTTPStatus.OK, preview


def handle_compile(payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
    try:
        merged = _merged_config(payload)
    except GridConfigurationError as exc:
        return HTTPStatus.BAD_REQUEST, {"error": str(exc)}
    ok, message = check_strategy(merged["strategy"]["source"], resolve_param_names(merged))
    return HTTPStatus.OK, {"ok": ok, "error": message}


def handle_start_run(manager: RunManager, payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
    try:
        merged = _merged_config(payload)
    except GridConfigurationError as exc:
        return HTTPStatus.BAD_REQUEST, {"error": str(exc)}
    ok, message = check_strategy(merged["strategy"]["source"], resolve_param_names(merged))
    if not ok:
        return HTTPStatus.UNPROCESSABLE_ENTITY, {"error": message}
    record, error = manager.create_run(merged)
    if record is None:
        return HTTPStatus.CONFLICT, {"error": error}
    return HTTPStatus.CREATED, {"run_id": record.run_id, "status": record.status}


def _sse_frame(event: dict[str, Any]) -> bytes:
    data = json.dumps(_to_jsonable(event), separators=(",", ":"), ensure_ascii=False)
    return f"id: {event['seq']}\nevent: {event['event']}\ndata: {data}\n\n".encode("utf-8")


def _read_json_body(handler: BaseHTTPRequestHandler) -> dict[str, Any]:
    try:
        content_length = int(handler.headers.get("Content-Length", "0"))
    except ValueError:
        content_length = 0

    if content_length <= 0:
        return {}

    raw = handler.rfile.read(content_length)
    if not raw:
        return {}

    try:
        parsed = json.loads(raw.decode("utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON body: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ValueError("Request JSON body must be an object.")
    return parsed


def _build_handler(manager: RunManager, token: str):
    class ServiceHandler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def log_message(self, fmt: str, *args: Any) -> None:  # pragma: no cover
            return

        def _send_json(self, payload: dict[str, Any], status: int = HTTPStatus.OK) -> None:
            blob = json.dumps(_to_jsonable(payload), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
            self.send_response(int(status))
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Content-Length", str(len(blob)))
            self.end_headers()
            self.wfile.write(blob)

        def _is_authorized(self) -> bool:
            if self.headers.get("X-Kelly-Sweep-Token") == token:
                return True
            auth = self.headers.get("Authorization", "")
            return auth.startswith("Bearer ") and auth[7:] == token

        def _require_auth(self) -> bool:
            if self._is_authorized():
                return True
            self._send_json({"error": "Unauthorized."}, status=HTTPStatus.UNAUTHORIZED)
            return False

        def _send_sse(self, record: RunRecord, from_seq: int) -> None:
            self.send_response(int(HTTPStatus.OK))
            self.send_header("Content-Type", "text/event-stream")
            self.send_header("Cache-Control", "no-cache")
            self.send_header("Connection", "keep-alive")
            self.end_headers()

            seq = max(0, from_seq)
            try:
                while True:
                    events = record.events_after(seq)
                    for event in events:
                        self.wfile.write(_sse_frame(event))
                        seq = event["seq"]
                    if events:
                        self.wfile.flush()
                    elif record.is_terminal():
                        break
                    elif not record.wait_for_event(seq, timeout=10.0):
                        self.wfile.write(b": keepalive\n\n")
                        self.wfile.flush()
            except (BrokenPipeError, ConnectionResetError):
                return

        def _lookup_run(self, run_id: str) -> Optional[RunRecord]:
            record = manager.get_run(run_id)
            if record is None:
                self._send_json({"error": "Run not found."}, status=HTTPStatus.NOT_FOUND)
            return record

        def do_GET(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            path = parsed.path
            segments = [part for part in path.split("/") if part]

            if path == "/health":
                self._send_json({"status": "ok", "active_run": manager.active_run_id()})
                return

            if not self._require_auth():
                return

            if path == "/defaults":
                self._send_json({"defaults": DEFAULT_CONFIG})
                return

            if len(segments) == 2 and segments[0] == "runs":
                record = self._lookup_run(segments[1])
                if record is not None:
                    self._send_json(record.snapshot())
                return

            if len(segments) == 3 and segments[0] == "runs" and segments[2] == "stream":
                record = self._lookup_run(segments[1])
                if record is None:
                    return
                query = parse_qs(parsed.query)
                try:
                    from_seq = int(query.get("from", ["0"])[0])
                except ValueError:
                    from_seq = 0
                self._send_sse(record, from_seq)
                return

            self._send_json({"error": "Not found."}, status=HTTPStatus.NOT_FOUND)

        def do_POST(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            path = parsed.path
            segments = [part for part in path.split("/") if part]

            if not self._require_auth():
                return

            if len(segments) == 3 and segments[0] == "runs" and segments[2] == "cancel":
                ok, message = manager.cancel_run(segments[1])
                if not ok:
                    status = HTTPStatus.NOT_FOUND if message == "Run not found." else HTTPStatus.CONFLICT
                    self._send_json({"error": message}, status=status)
                    return
                self._send_json({"status": "cancel_requested", "message": message})
                return

            try:
                payload = _read_json_body(self)
            except ValueError as exc:
                self._send_json({"error": str(exc)}, status=HTTPStatus.BAD_REQUEST)
                return

            if path == "/preview":
                status, body = handle_preview(payload)
            elif path == "/compile":
                status, body = handle_compile(payload)
            elif path == "/runs":
                status, body = handle_start_run(manager, payload)
            else:
                status, body = HTTPStatus.NOT_FOUND, {"error": "Not found."}
            self._send_json(body, status=status)

    return ServiceHandler


def main() -> int:
    parser = argparse.ArgumentParser(description="Kelly sweep local HTTP service")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=0)
    parser.add_argument("--token", default="")
    args = parser.parse_args()

    token = args.token.strip() or secrets.token_urlsafe(24)
    manager = RunManager()

    handler = _build_handler(manager, token)
    server = ThreadingHTTPServer((args.host, args.port), handler)
    server.daemon_threads = True

    host, port = server.server_address
    handshake = {
        "event": "service_ready",
        "host": host,
        "port": int(port),
        "token": token,
        "pid": os.getpid(),
    }
    print(json.dumps(handshake, separators=(",", ":"), ensure_ascii=False), flush=True)

    def _request_stop(signum: int, _frame: Any) -> None:
        raise KeyboardInterrupt(f"Received signal {signum}")

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    try:
        server.serve_forever(poll_interval=0.3)
    except KeyboardInterrupt:
        pass
    finally:
        server.shutdown()
        manager.shutdown()
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
