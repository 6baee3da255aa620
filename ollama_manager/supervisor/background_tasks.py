import logging
import threading
from pathlib import Path
from typing import Callable, Optional

log = logging.getLogger(__name__)


class ResourceMonitor:
    """
    Calls `sample(stop_event)` every `interval` seconds on a daemon thread.

    Each start() creates a fresh stop event and hands it to the sampler, so a
    sample that was already in flight when stop() ran can see that it is stale
    and must not publish anything.
    """

    def __init__(self, interval: float, sample: Callable[[threading.Event], None],
                 name: str = "ResourceMonitorThread"):
        self.interval = interval
        self.sample = sample
        self.name = name
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._stop_event is not None and not self._stop_event.is_set()

    def _run(self, stop_event: threading.Event) -> None:
        log.debug(f"{self.name} started with a {self.interval}s interval.")
        while not stop_event.wait(self.interval):
            try:
                self.sample(stop_event)
            except Exception as e:
                # A single failed sample never ends monitoring.
                log.critical(f"Unexpected error in {self.name}: {e}", exc_info=True)
        log.debug(f"{self.name} has stopped.")

    def start(self) -> None:
        with self._lock:
            if self._stop_event is not None and not self._stop_event.is_set():
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                daemon=True,
                name=self.name
            )
            self._thread.start()

    def stop(self) -> None:
        """Cancels the interval. No further samples start after this returns."""
        with self._lock:
            if self._stop_event is not None:
                self._stop_event.set()


def _tail_service_log(log_path: Path, start_offset: int, stop_event: threading.Event, process_name: str) -> None:
    """
    Tails the service's output file and forwards new lines to the `proc.<name>` logger.
    Runs in a dedicated background thread.

    :param log_path: The file the service writes its stdout/stderr to.
    :param start_offset: Byte offset to start reading from (the file size at launch).
    :param stop_event: Set to end tailing.
    :param process_name: Used for the logger name.
    """
    proc_logger = logging.getLogger(f"proc.{process_name}")
    log.debug(f"Starting to tail service output at: {log_path}")

    for _ in range(5):  # Wait up to 5 seconds for the service to create the file
        if log_path.exists() or stop_event.wait(1):
            break

    try:
        with open(log_path, 'rb') as f:
            f.seek(start_offset)
            while not stop_event.is_set():
                line_bytes = f.readline()
                if not line_bytes:
                    stop_event.wait(0.2)
                    continue
                line = line_bytes.decode("utf-8", errors="replace").strip()
                if line:
                    proc_logger.info(line)
    except FileNotFoundError:
        if not stop_event.is_set():
            log.error(f"Service output file not found at {log_path}. Tailing failed.")
    except OSError as e:
        if not stop_event.is_set():
            log.error(f"Error while tailing service output: {e}", exc_info=True)

    log.debug("Service output tailing thread has stopped.")


def start_service_log_tailing(log_path: Path, start_offset: int, process_name: str) -> threading.Event:
    """
    Starts a thread to tail the service's output file.

    :return: The event that stops the tailer when set.
    """
    stop_event = threading.Event()
    tail_thread = threading.Thread(
        target=_tail_service_log,
        args=(log_path, start_offset, stop_event, process_name),
        daemon=True,
        name="ServiceLogTailerThread"
    )
    tail_thread.start()
    return stop_event
