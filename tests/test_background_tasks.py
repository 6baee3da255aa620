import logging
import threading

from ollama_manager.supervisor.background_tasks import ResourceMonitor, start_service_log_tailing
from tests.conftest import wait_until


def test_monitor_samples_until_stopped():
    calls = []
    monitor = ResourceMonitor(0.01, lambda stop_event: calls.append(stop_event))

    monitor.start()
    assert monitor.running
    assert wait_until(lambda: len(calls) >= 3)
    monitor.stop()

    assert not monitor.running
    assert calls[0].is_set()


def test_monitor_survives_a_failing_sample(caplog):
    calls = []

    def sample(stop_event):
        calls.append(stop_event)
        if len(calls) == 1:
            raise RuntimeError("transient")

    monitor = ResourceMonitor(0.01, sample)
    monitor.start()
    try:
        assert wait_until(lambda: len(calls) >= 2)
    finally:
        monitor.stop()
    assert "transient" in caplog.text


def test_monitor_start_is_idempotent():
    monitor = ResourceMonitor(60, lambda stop_event: None)

    monitor.start()
    first = monitor._thread
    monitor.start()

    assert monitor._thread is first
    monitor.stop()


def test_restarted_monitor_uses_a_fresh_stop_event():
    seen = []
    monitor = ResourceMonitor(0.01, seen.append)

    monitor.start()
    assert wait_until(lambda: len(seen) >= 1)
    monitor.stop()
    old = seen[0]
    seen.clear()
    monitor.start()
    assert wait_until(lambda: len(seen) >= 1)
    monitor.stop()

    assert seen[0] is not old


def test_service_output_is_forwarded_to_proc_logger(tmp_path, caplog):
    log_path = tmp_path / "ollama-serve.log"
    log_path.write_bytes(b"old line from a previous run\n")
    offset = log_path.stat().st_size

    with caplog.at_level(logging.INFO, logger="proc.ollama"):
        stop_event = start_service_log_tailing(log_path, offset, "ollama")
        try:
            with log_path.open("ab") as f:
                f.write(b"Listening on [::]:11434 (version 0.5.7)\n")
            assert wait_until(lambda: any("Listening on" in r.getMessage() for r in caplog.records))
        finally:
            stop_event.set()

    messages = [r.getMessage() for r in caplog.records if r.name == "proc.ollama"]
    assert "old line from a previous run" not in messages


def _tailers_alive():
    return any(t.name == "ServiceLogTailerThread" and t.is_alive() for t in threading.enumerate())


def test_tailer_stops_when_file_never_appears(tmp_path):
    stop_event = start_service_log_tailing(tmp_path / "missing.log", 0, "ollama")
    stop_event.set()

    assert wait_until(lambda: not _tailers_alive())
