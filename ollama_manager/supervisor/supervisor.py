import time
import logging
import threading
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import psutil
import requests

from ollama_manager.local.config import effective_settings
from ollama_manager.supervisor import background_tasks, process_utils, readiness, shutdown
from .errors import ErrorKind, SignalError
from .events import EventChannel, EventKind
from .locator import BinaryLocator
from .probe import ProcessProbe, select_probe
from .state import ResourceSample, ServiceResult, ServiceState, StatusReport

log = logging.getLogger(__name__)

ConfirmHook = Callable[[], bool]


class ServiceSupervisor:
    """
    Manages the lifecycle of the local Ollama service.

    It starts `ollama serve` detached, waits for its HTTP API to answer, samples
    its resident memory while it runs and stops it with escalating signals.
    Every state change, significant memory change and background failure is
    published on `events`.

    start() and stop() never raise; they return a ServiceResult. Calls made in
    the wrong state are no-ops, as are calls made while the other operation is
    still in progress. Only one supervisor should exist per service.
    """

    def __init__(self, config: Any = None, locator: BinaryLocator = None, probe: ProcessProbe = None,
                 events: EventChannel = None, session: requests.Session = None,
                 confirm_stop: Optional[ConfirmHook] = None,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config or effective_settings
        self.locator = locator or BinaryLocator()
        self.probe = probe or select_probe(backend=self.config.PROBE_BACKEND)
        self.events = events or EventChannel()
        self.session = session or requests.Session()
        self.confirm_stop = confirm_stop
        self.clock = clock

        self._state = ServiceState.STOPPED
        self._sample = ResourceSample(0, clock())
        self._last_emitted_mb = 0.0
        self._process: Optional[subprocess.Popen] = None
        self._generation = 0
        self._tail_stop: Optional[threading.Event] = None

        self._state_lock = threading.RLock()
        self._operation_lock = threading.Lock()
        # Held from a status commit through its emission, and around every other emit.
        self._publish_lock = threading.RLock()
        self._startup_cancel = threading.Event()
        self._shutdown_event = threading.Event()
        self._monitor = background_tasks.ResourceMonitor(self.config.MONITOR_INTERVAL, self._sample_resources)

    #* --- Read-only State ---
    @property
    def state(self) -> ServiceState:
        with self._state_lock:
            return self._state

    @property
    def last_sample(self) -> ResourceSample:
        with self._state_lock:
            return self._sample

    @property
    def ram_usage_bytes(self) -> int:
        return self.last_sample.total_resident_bytes

    @property
    def process(self) -> Optional[subprocess.Popen]:
        """The spawned child, or None if the running service was discovered."""
        with self._state_lock:
            return self._process

    @property
    def monitoring(self) -> bool:
        return self._monitor.running

    @property
    def readiness_url(self) -> str:
        return self.config.OLLAMA_BASE_URL.rstrip("/") + self.config.READINESS_PATH

    def service_environment(self) -> Dict[str, str]:
        return {
            "OLLAMA_HOST": self.config.OLLAMA_BIND_ADDRESS,
            "OLLAMA_KEEP_ALIVE": self.config.OLLAMA_KEEP_ALIVE,
        }

    #* --- State Transitions ---
    def _transition(self, new_state: ServiceState, expected=None) -> bool:
        """
        Commits a state change and then publishes it.

        The publish lock spans both steps, so status events reach subscribers
        in commit order and the last one delivered matches `state`.

        :param expected: If given, the change only happens from one of these states.
        :return: True if the state changed.
        """
        with self._publish_lock:
            with self._state_lock:
                if expected is not None and self._state not in expected:
                    return False
                if self._state is new_state:
                    return False
                previous = self._state
                self._state = new_state
                if new_state is not ServiceState.RUNNING:
                    self._sample = ResourceSample(0, self.clock())
                    self._last_emitted_mb = 0.0

            log.info(f"Service state: {previous.value} -> {new_state.value}")
            self.events.emit(EventKind.STATUS_CHANGED, new_state)
        return True

    def _emit(self, kind: EventKind, payload: Any) -> None:
        with self._publish_lock:
            self.events.emit(kind, payload)

    def _fail(self, error: ErrorKind, message: str, emit: bool = True) -> ServiceResult:
        log.error(message)
        if emit:
            self._emit(EventKind.SERVICE_ERROR, message)
        return ServiceResult.failure(error, message)

    def _probe_running(self) -> bool:
        try:
            return self.probe.is_running()
        except (OSError, psutil.Error) as e:
            log.warning(f"Liveness probe failed: {e}")
            return False

    #* --- Status ---
    def check_status(self) -> StatusReport:
        """
        Re-probes liveness and updates the cached state if it changed.

        A service found running while the state is STOPPED is adopted and
        monitored; one found gone while RUNNING is marked STOPPED. The
        transitional states belong to the start() or stop() in flight and are
        left alone.
        """
        running = self._probe_running()
        previous = self.state

        if running and previous is ServiceState.STOPPED:
            if self._transition(ServiceState.RUNNING, expected={ServiceState.STOPPED}):
                log.info("Found a running Ollama service. Monitoring it.")
                self._monitor.start()
        elif not running and previous is ServiceState.RUNNING:
            if self._transition(ServiceState.STOPPED, expected={ServiceState.RUNNING}):
                self._monitor.stop()

        return StatusReport(running, self.ram_usage_bytes, self.state)

    #* --- Start ---
    def start(self) -> ServiceResult:
        """
        Starts the service and waits until its API answers.

        :return: A ServiceResult; failures carry an ErrorKind and a message.
        """
        if self._shutdown_event.is_set():
            return ServiceResult.skip("The supervisor has been shut down.")
        if not self._operation_lock.acquire(blocking=False):
            return ServiceResult.skip("Another start or stop is already in progress.")
        try:
            return self._start()
        except Exception as e:
            log.critical(f"Unexpected error while starting the service: {e}", exc_info=True)
            self._transition(ServiceState.STOPPED, expected={ServiceState.STARTING})
            return self._fail(ErrorKind.SPAWN_ERROR, f"Unexpected error while starting Ollama: {e}")
        finally:
            self._operation_lock.release()

    def _start(self) -> ServiceResult:
        current = self.state
        if current is not ServiceState.STOPPED:
            log.debug(f"start() ignored, service is {current.value}.")
            return ServiceResult.skip(f"Service is {current.value}; start ignored.")

        if self.check_status().is_running:
            return self._fail(ErrorKind.ALREADY_RUNNING, "Ollama service is already running.")

        binary = self.locator.resolve()
        if binary is None:
            return self._fail(
                ErrorKind.BINARY_NOT_FOUND,
                f"Ollama binary not found. Install from {self.config.INSTALL_URL} "
                f"or set {self.config.BINARY_ENV_VAR} to the executable's path."
            )

        self._startup_cancel = threading.Event()
        if self._shutdown_event.is_set():
            return ServiceResult.skip("The supervisor has been shut down.")
        self._transition(ServiceState.STARTING)

        log_path: Optional[Path] = self.config.SERVICE_LOG_PATH
        offset = log_path.stat().st_size if log_path is not None and log_path.exists() else 0
        try:
            process = process_utils.launch_process(binary, list(self.config.SERVICE_ARGS), self.service_environment(), log_path)
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            self._transition(ServiceState.STOPPED, expected={ServiceState.STARTING})
            return self._fail(ErrorKind.SPAWN_ERROR, f"Failed to launch '{binary}': {e}")

        with self._state_lock:
            self._generation += 1
            generation = self._generation
            self._process = process

        process_utils.watch_process_exit(
            process,
            lambda code: self._handle_process_exit(generation, code),
            lambda error: self._handle_watch_error(generation, error),
        )
        if log_path is not None:
            self._start_tailing(log_path, offset)

        outcome = readiness.wait_for_service(
            self.readiness_url,
            timeout=self.config.READINESS_TIMEOUT,
            initial_delay=self.config.READINESS_INITIAL_DELAY,
            max_delay=self.config.READINESS_MAX_DELAY,
            request_timeout=self.config.READINESS_REQUEST_TIMEOUT,
            cancel_event=self._startup_cancel,
            session=self.session,
            clock=self.clock,
        )

        if outcome is readiness.Readiness.READY:
            if self._transition(ServiceState.RUNNING, expected={ServiceState.STARTING}):
                self._monitor.start()
                return ServiceResult.ok("Ollama service started.")
            outcome = readiness.Readiness.CANCELLED

        if outcome is readiness.Readiness.CANCELLED:
            if self._shutdown_event.is_set():
                # shutdown() may have run before the child was recorded.
                with self._state_lock:
                    self._generation += 1
                if process.poll() is None:
                    shutdown.terminate_spawned_process(process, self.config.SHUTDOWN_KILL_TIMEOUT)
                self._transition(ServiceState.STOPPED, expected={ServiceState.STARTING})
                return self._fail(ErrorKind.CANCELLED, "Startup abandoned because the supervisor is shutting down.")
            # The exit handler has already published the exit detail.
            detail = process_utils.describe_exit(process.poll())
            return self._fail(ErrorKind.SPAWN_ERROR, f"Ollama process exited during startup ({detail}).", emit=False)

        self._transition(ServiceState.STOPPED, expected={ServiceState.STARTING})
        if self.config.KILL_ON_STARTUP_TIMEOUT:
            log.warning("Terminating the Ollama process that missed the readiness deadline.")
            shutdown.terminate_spawned_process(process, self.config.SHUTDOWN_KILL_TIMEOUT)
        else:
            log.warning(f"Ollama process (PID {process.pid}) was left running after the readiness timeout.")
        return self._fail(
            ErrorKind.STARTUP_TIMEOUT,
            f"Ollama service failed to start within {self.config.READINESS_TIMEOUT * 1000:.0f}ms."
        )

    #* --- Stop ---
    def stop(self, confirm: Optional[ConfirmHook] = None) -> ServiceResult:
        """
        Stops the service by name, whether or not this supervisor spawned it.

        :param confirm: Pre-stop confirmation hook; overrides the one given at construction.
        :return: A ServiceResult reflecting the re-probed state.
        """
        if not self._operation_lock.acquire(blocking=False):
            return ServiceResult.skip("Another start or stop is already in progress.")
        try:
            return self._stop(confirm or self.confirm_stop)
        except Exception as e:
            log.critical(f"Unexpected error while stopping the service: {e}", exc_info=True)
            self._settle_after_stop()
            return self._fail(ErrorKind.SIGNAL_ERROR, f"Unexpected error while stopping Ollama: {e}")
        finally:
            self._operation_lock.release()

    def _stop(self, confirm: Optional[ConfirmHook]) -> ServiceResult:
        if self.state is not ServiceState.RUNNING:
            log.debug("stop() ignored, service was not running.")
            return ServiceResult.skip("Service was not running.")

        if confirm is not None and not confirm():
            log.info("Stop cancelled at confirmation.")
            return ServiceResult.skip("Stop cancelled.")

        if not self._transition(ServiceState.STOPPING, expected={ServiceState.RUNNING}):
            return ServiceResult.skip("Service was not running.")
        self._monitor.stop()

        signal_error: Optional[SignalError] = None
        try:
            shutdown.signal_service(self.probe)
        except SignalError as e:
            signal_error = e
            log.error(f"Forceful termination failed: {e}")

        self._shutdown_event.wait(self.config.STOP_GRACE_PERIOD)

        if self._settle_after_stop():
            if signal_error is not None:
                return self._fail(ErrorKind.SIGNAL_ERROR, f"Failed to stop Ollama service: {signal_error}")
            return self._fail(ErrorKind.SIGNAL_ERROR, "Ollama service is still running after the stop request.")

        if signal_error is not None:
            log.warning("Signalling reported an error but the service is gone.")
        return ServiceResult.ok("Ollama service stopped.")

    def _settle_after_stop(self) -> bool:
        """
        Commits the re-probed truth after a stop attempt.

        :return: True if the service is still running.
        """
        still_running = self._probe_running()
        if still_running:
            if self._transition(ServiceState.RUNNING, expected={ServiceState.STOPPING}):
                self._monitor.start()
        else:
            self._transition(ServiceState.STOPPED, expected={ServiceState.STOPPING})
            self._stop_tailing()
        return still_running

    #* --- Background Callbacks ---
    def _handle_process_exit(self, generation: int, returncode: Optional[int]) -> None:
        """Called on the exit watcher thread when the spawned child exits."""
        detail = process_utils.describe_exit(returncode)
        with self._state_lock:
            if generation != self._generation:
                log.debug(f"Ignoring exit of a previous Ollama process ({detail}).")
                return
            previous = self._state

        self._stop_tailing()
        if previous not in (ServiceState.RUNNING, ServiceState.STARTING):
            log.info(f"Ollama process exited ({detail}).")
            return

        self._monitor.stop()
        changed = self._transition(ServiceState.STOPPED, expected={ServiceState.RUNNING, ServiceState.STARTING})
        if previous is ServiceState.STARTING:
            self._startup_cancel.set()
        if changed:
            message = f"Ollama process exited unexpectedly ({detail})."
            log.warning(message)
            self._emit(EventKind.SERVICE_ERROR, message)

    def _handle_watch_error(self, generation: int, error: Exception) -> None:
        with self._state_lock:
            if generation != self._generation:
                return
        self._emit(EventKind.SERVICE_ERROR, f"Lost track of the Ollama process: {error}")

    def _sample_resources(self, stop_event: threading.Event) -> None:
        """One monitor tick: sample memory, detect a vanished service, publish changes."""
        try:
            entries = self.probe.list_matching()
        except Exception as e:
            log.error(f"Resource sampling failed: {e}", exc_info=True)
            if not stop_event.is_set():
                self._emit(EventKind.SERVICE_ERROR, f"Resource sampling failed: {e}")
            return

        emit_bytes = None
        with self._state_lock:
            if stop_event.is_set() or self._state is not ServiceState.RUNNING:
                return
            if entries:
                sample = ResourceSample(sum(entry.rss_bytes for entry in entries), self.clock())
                self._sample = sample
                delta = round(abs(sample.megabytes - self._last_emitted_mb), 6)
                if delta > self.config.RAM_DELTA_THRESHOLD_MB:
                    self._last_emitted_mb = sample.megabytes
                    emit_bytes = sample.total_resident_bytes

        if not entries:
            self._monitor.stop()
            if self._transition(ServiceState.STOPPED, expected={ServiceState.RUNNING}):
                self._stop_tailing()
                message = "Ollama service is no longer running."
                log.warning(message)
                self._emit(EventKind.SERVICE_ERROR, message)
            return

        if emit_bytes is not None and not stop_event.is_set():
            log.debug(f"RAM usage changed: {emit_bytes / 1024 / 1024:.1f} MB")
            self._emit(EventKind.RAM_USAGE_CHANGED, emit_bytes)

    #* --- Output Tailing ---
    def _start_tailing(self, log_path: Path, offset: int) -> None:
        self._stop_tailing()
        stop_event = background_tasks.start_service_log_tailing(log_path, offset, self.config.SERVICE_NAME)
        with self._state_lock:
            self._tail_stop = stop_event

    def _stop_tailing(self) -> None:
        with self._state_lock:
            stop_event, self._tail_stop = self._tail_stop, None
        if stop_event is not None:
            stop_event.set()

    #* --- Teardown ---
    def shutdown(self) -> None:
        """
        Cancels all timers and best-effort terminates the child this supervisor
        spawned. A service that was discovered rather than spawned keeps running.
        """
        log.info("Shutting down the service supervisor...")
        self._shutdown_event.set()
        self._startup_cancel.set()
        self._monitor.stop()
        self._stop_tailing()

        with self._state_lock:
            process = self._process
            # The exit watcher of a child we terminate here must not report it.
            self._generation += 1

        if process is None or process.poll() is not None:
            return

        shutdown.terminate_spawned_process(process, self.config.SHUTDOWN_KILL_TIMEOUT)
        self._transition(ServiceState.STOPPED, expected={ServiceState.RUNNING, ServiceState.STARTING})
