"""Root pytest configuration and shared fakes."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Callable

import pytest
import requests

from ollama_manager.local.config import MergedSettings
from ollama_manager.supervisor import EventChannel, EventKind, ProcessProbe, ServiceSupervisor, SignalError, SignalKind
from ollama_manager.supervisor import process_utils, shutdown
from ollama_manager.supervisor.probe import ProcessEntry

MB = 1024 * 1024


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    """Polls `predicate` until it is true or `timeout` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCancelEvent:
    """A cancel event whose wait() advances a FakeClock instead of sleeping."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.waits: list[float] = []
        self._set = False

    def is_set(self) -> bool:
        return self._set

    def set(self) -> None:
        self._set = True

    def wait(self, timeout: float) -> bool:
        self.waits.append(timeout)
        self.clock.advance(timeout)
        return self._set


class FakeResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code


class FakeSession:
    """
    Scripted stand-in for requests.Session.

    `script` items are status codes or exceptions; the last item repeats.
    """

    def __init__(self, script: list[Any], clock: Callable[[], float] = time.monotonic):
        self.script = list(script)
        self.clock = clock
        self.calls: list[tuple[float, str, float]] = []

    def get(self, url: str, timeout: float = None) -> FakeResponse:
        self.calls.append((self.clock(), url, timeout))
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return FakeResponse(item)


def refused() -> requests.ConnectionError:
    return requests.ConnectionError("Connection refused")


class FakeProbe(ProcessProbe):
    """In-memory process table."""

    def __init__(self):
        super().__init__("ollama", "ollama serve")
        self.running = False
        self.entries: list[ProcessEntry] = []
        self.signals: list[SignalKind] = []
        self.failing: set[SignalKind] = set()
        self.stops_on: set[SignalKind] = {SignalKind.GRACEFUL, SignalKind.FORCEFUL}
        self._lock = threading.Lock()

    def set_processes(self, *rss_bytes: int) -> None:
        with self._lock:
            self.entries = [ProcessEntry(1000 + i, rss, "ollama serve") for i, rss in enumerate(rss_bytes)]
            self.running = bool(rss_bytes)

    def list_matching(self) -> list[ProcessEntry]:
        with self._lock:
            return list(self.entries)

    def is_running(self) -> bool:
        with self._lock:
            return self.running

    def send_signal(self, kind: SignalKind) -> None:
        self.signals.append(kind)
        if kind in self.failing:
            raise SignalError(f"{kind.value} signal failed")
        if kind in self.stops_on:
            self.set_processes()


class FakeLocator:
    def __init__(self, path: Path | None = Path("/opt/ollama/bin/ollama")):
        self.path = path
        self.name = "ollama"
        self.env_var = "OLLAMA_PATH"
        self.calls = 0

    def resolve(self) -> Path | None:
        self.calls += 1
        return self.path


class FakeProcess:
    """Popen stand-in whose exit is triggered by the test."""

    def __init__(self, pid: int = 4242):
        self.pid = pid
        self.returncode = None
        self._exited = threading.Event()

    def poll(self):
        return self.returncode

    def wait(self, timeout: float = None):
        self._exited.wait(timeout)
        return self.returncode

    def exit(self, code: int) -> None:
        self.returncode = code
        self._exited.set()


class EventRecorder:
    def __init__(self, channel: EventChannel):
        self.events: list[tuple[EventKind, Any]] = []
        self._lock = threading.Lock()
        for kind in EventKind:
            channel.subscribe(kind, lambda payload, kind=kind: self._record(kind, payload))

    def _record(self, kind: EventKind, payload: Any) -> None:
        with self._lock:
            self.events.append((kind, payload))

    def of(self, kind: EventKind) -> list[Any]:
        with self._lock:
            return [payload for k, payload in self.events if k is kind]


@pytest.fixture
def config(tmp_path):
    cfg = MergedSettings(overrides_path=tmp_path / "overrides.json")
    cfg.SERVICE_LOG_PATH = None
    cfg.READINESS_INITIAL_DELAY = 0.01
    cfg.READINESS_MAX_DELAY = 0.02
    cfg.READINESS_TIMEOUT = 0.3
    cfg.READINESS_REQUEST_TIMEOUT = 0.1
    cfg.MONITOR_INTERVAL = 0.02
    cfg.STOP_GRACE_PERIOD = 0.01
    cfg.SHUTDOWN_KILL_TIMEOUT = 0.1
    cfg.KILL_ON_STARTUP_TIMEOUT = False
    return cfg


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def launches(monkeypatch, probe):
    """
    Replaces process launching. Each launch returns a FakeProcess and makes the
    fake process table show one 100 MB service process.
    """
    calls: list[dict[str, Any]] = []

    def fake_launch(binary, args, env_overrides, log_path=None):
        process = FakeProcess(pid=4242 + len(calls))
        calls.append({"binary": binary, "args": args, "env": dict(env_overrides), "process": process})
        probe.set_processes(100 * MB)
        return process

    monkeypatch.setattr(process_utils, "launch_process", fake_launch)
    return calls


@pytest.fixture
def terminations(monkeypatch):
    calls: list[Any] = []

    def fake_terminate(process, timeout):
        calls.append(process)
        process.exit(-15)

    monkeypatch.setattr(shutdown, "terminate_spawned_process", fake_terminate)
    return calls


@pytest.fixture
def make_supervisor(config, probe):
    created: list[ServiceSupervisor] = []

    def factory(session=None, locator=None, **kwargs) -> ServiceSupervisor:
        supervisor = ServiceSupervisor(
            config=config,
            locator=locator or FakeLocator(),
            probe=probe,
            session=session or FakeSession([200]),
            **kwargs,
        )
        created.append(supervisor)
        return supervisor

    yield factory
    for supervisor in created:
        supervisor._monitor.stop()
        supervisor._shutdown_event.set()
