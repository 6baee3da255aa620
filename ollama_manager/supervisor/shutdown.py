import psutil
import logging
import subprocess
from typing import List

from .errors import SignalError
from .probe import ProcessProbe, SignalKind

log = logging.getLogger(__name__)


def signal_service(probe: ProcessProbe) -> SignalKind:
    """
    Sends a graceful termination signal to every service process, escalating
    to a forceful one if the graceful signal could not be delivered.

    :return: The kind of signal that was delivered.
    :raises SignalError: If the forceful signal fails as well.
    """
    try:
        probe.send_signal(SignalKind.GRACEFUL)
        log.info("Graceful termination signal sent.")
        return SignalKind.GRACEFUL
    except SignalError as e:
        log.warning(f"Graceful termination failed: {e}. Escalating to forceful termination.")

    probe.send_signal(SignalKind.FORCEFUL)
    log.warning("Forceful termination signal sent.")
    return SignalKind.FORCEFUL


def _collect_process_tree(pid: int) -> List[psutil.Process]:
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return []
    procs = [parent]
    try:
        procs.extend(parent.children(recursive=True))
    except psutil.NoSuchProcess:
        log.debug(f"Process {pid} no longer exists, skipping children retrieval.")
    return procs


def _terminate_processes(processes: List[psutil.Process]) -> None:
    """Sends SIGTERM to all processes."""
    for proc in processes:
        try:
            log.debug(f"Sending SIGTERM to PID {proc.pid}")
            proc.terminate()
        except psutil.NoSuchProcess:
            continue
        except psutil.Error as e:
            log.warning(f"Could not terminate PID {proc.pid}: {e}")


def _forceful_kill(processes: List[psutil.Process]) -> None:
    """Forcefully kills processes that didn't terminate gracefully."""
    if not processes:
        return

    log.warning(f"{len(processes)} processes did not terminate gracefully. Forcing shutdown...")
    for proc in processes:
        try:
            log.warning(f"Killing stubborn process PID {proc.pid}.")
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.Error as e:
            log.error(f"Could not kill PID {proc.pid}: {e}")


def terminate_spawned_process(process: subprocess.Popen, timeout: float) -> None:
    """
    Best-effort termination of a child this supervisor spawned, including its
    descendants. Never raises.

    :param process: The Popen handle of the spawned service.
    :param timeout: Seconds to wait after SIGTERM before killing.
    """
    if process.poll() is not None:
        return

    procs = _collect_process_tree(process.pid)
    if not procs:
        return

    log.info(f"Terminating spawned service process tree (PID {process.pid}, {len(procs)} processes)...")
    _terminate_processes(procs)
    try:
        _, alive = psutil.wait_procs(procs, timeout=timeout)
    except psutil.Error as e:
        log.warning(f"Waiting for processes to exit failed: {e}")
        alive = procs

    _forceful_kill(alive)
