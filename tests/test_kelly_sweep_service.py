import json
import math
import os
from pathlib import Path
import queue
import signal
import sys
import time

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "python_service"))

import kelly_sweep_service as service


def _payload(**config):
    base = {
        "parameters": [{"name": "a", "min": 0.0, "max": 1.0, "step": 0.5}],
        "strategy": {"source": "1 + 0.1 * a"},
        "simulation": {"num_experiments": 2, "num_rounds": 3, "num_threads": 1},
    }
    base.update(config)
    return {"config": base}


def test_preview_reports_grid_size_and_confirmation_flag():
    status, body = service.handle_preview(_payload())
    assert status == 200
    assert body["grid_size"] == 3
    assert body["confirm_required"] is False
    assert body["sample"][0] == {"a": 0.0}

    payload = _payload(simulation={"confirm_grid_size": 2})
    status, body = service.handle_preview(payload)
    assert body["confirm_required"] is True


def test_preview_rejects_invalid_config():
    status, body = service.handle_preview({"config": {"simulation": {"num_threads": 0}}})
    assert status == 400
    assert "num_threads" in body["error"]

    status, body = service.handle_preview({"config": []})
    assert status == 400


def test_compile_check_reports_failures_without_running():
    status, body = service.handle_compile(_payload())
    assert status == 200
    assert body == {"ok": True, "error": None}

    status, body = service.handle_compile(_payload(strategy={"source": "1 +"}))
    assert status == 200
    assert body["ok"] is False
    assert "Syntax error" in body["error"]


def test_to_jsonable_converts_numpy_and_non_finite_values():
    converted = service._to_jsonable({"z": np.array([[0.5, np.nan]]), "w": np.float64(math.inf), 1: (1, 2)})
    assert converted == {"z": [[0.5, None]], "w": None, "1": [1, 2]}


def test_run_worker_posts_progress_then_result():
    out_queue = queue.Queue()
    service._run_worker(_payload()["config"], out_queue)

    messages = []
    while not out_queue.empty():
        messages.append(out_queue.get())

    kinds = [message["kind"] for message in messages]
    assert kinds[-1] == "result"
    assert "progress" in kinds
    result = messages[-1]["result"]
    assert result["grid_size"] == 3
    assert result["best"]["params"] == {"a": 1.0}


def test_run_worker_posts_error_for_failing_strategy():
    out_queue = queue.Queue()
    config = _payload(strategy={"source": "missing_name"})["config"]
    service._run_worker(config, out_queue)

    messages = []
    while not out_queue.empty():
        messages.append(out_queue.get())

    assert messages[-1]["kind"] == "error"
    assert messages[-1]["error_type"] == "StrategyExecutionError"
    assert "NameError" in messages[-1]["error"]


def test_run_record_events_and_snapshot():
    record = service.RunRecord(run_id="abc", config={}, created_at=service._now_iso())
    record.append_event("run_start", {"grid_size": 3})
    record.append_event("run_complete", {})
    assert [event["seq"] for event in record.events_after(0)] == [1, 2]
    assert record.wait_for_event(1, timeout=0.01) is True
    snapshot = record.snapshot(include_result=False)
    assert snapshot["latest_seq"] == 2
    assert snapshot["latest_event"] == "run_complete"
    assert snapshot["result"] is None


def test_handle_message_marks_failed_runs_terminal():
    manager = service.RunManager()
    record = service.RunRecord(run_id="abc", config={}, created_at=service._now_iso(), status="running")
    done = manager._handle_message(record, {"kind": "error", "error": "boom", "error_type": "CompileError"})
    assert done is True
    assert record.status == "failed"
    assert record.error_type == "CompileError"
    assert record.is_terminal()


def test_start_run_rejects_bad_config_and_uncompilable_strategy():
    manager = service.RunManager()
    status, body = service.handle_start_run(manager, {"config": {"simulation": {"num_rounds": 0}}})
    assert status == 400
    assert "num_rounds" in body["error"]

    status, body = service.handle_start_run(manager, _payload(strategy={"source": "return (1 +"}))
    assert status == 422
    assert "Syntax error" in body["error"]
    assert manager.active_run_id() is None


def test_sse_frame_carries_id_event_and_json_data():
    frame = service._sse_frame({"seq": 4, "event": "run_complete", "payload": {"best": math.nan}})
    lines = frame.decode("utf-8").split("\n")
    assert lines[0] == "id: 4"
    assert lines[1] == "event: run_complete"
    assert json.loads(lines[2][len("data: "):])["payload"] == {"best": None}
    assert frame.endswith(b"\n\n")


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def _wait_until(predicate, timeout):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def _worker_pids(record):
    return [event["payload"]["pid"] for event in record.events_after(0) if event["event"] == "worker_start"]


@pytest.mark.skipif(os.name != "posix", reason="probes process ids with os.kill")
def test_cancel_run_stops_the_sweep_worker_processes():
    manager = service.RunManager()
    config = _payload(
        strategy={"source": "while True:\n    pass"},
        simulation={"num_experiments": 1, "num_rounds": 1, "num_threads": 3},
    )["config"]
    record, error = manager.create_run(config)
    assert error is None

    pids = []
    try:
        assert _wait_until(lambda: len(_worker_pids(record)) == 3, timeout=30.0)
        pids = _worker_pids(record)
        assert all(_pid_alive(pid) for pid in pids)

        ok, _ = manager.cancel_run(record.run_id)
        assert ok is True
        assert _wait_until(lambda: not any(_pid_alive(pid) for pid in pids), timeout=10.0)
        assert _wait_until(record.is_terminal, timeout=5.0)
        assert record.status == "cancelled"
        assert manager.active_run_id() is None
    finally:
        manager.shutdown()
        for pid in pids:
            if _pid_alive(pid):
                os.kill(pid, signal.SIGKILL)
