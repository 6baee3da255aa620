import os
import sys
import logging
import threading
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

log = logging.getLogger(__name__)


#* --- Process Creation ---
def get_executable_path(base_path: Path, platform: str = None) -> Path:
    """Returns the platform-specific full path for an executable."""
    platform = platform or sys.platform
    if platform == "win32" and not base_path.suffix:
        return base_path.with_suffix(".exe")
    return base_path

def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific flags that detach the child from this process."""
    if sys.platform == "win32":
        return {
            "creationflags": subprocess.DETACHED_PROCESS
            | subprocess.CREATE_NEW_PROCESS_GROUP
            | subprocess.CREATE_NO_WINDOW
        }
    return {"start_new_session": True}

def build_service_env(overrides: Mapping[str, str], base: Mapping[str, str] = None) -> Dict[str, str]:
    """Layers `overrides` onto the inherited environment."""
    env = dict(os.environ if base is None else base)
    env.update(overrides)
    return env

def launch_process(binary: Path, args: List[str], env_overrides: Mapping[str, str],
                   log_path: Optional[Path] = None) -> subprocess.Popen:
    """
    Launches the supervised executable detached from this process.

    The child's stdout/stderr are appended to `log_path` rather than piped, so
    the child keeps running if this process exits. Without a log path the
    output is discarded.

    :raises OSError: If the executable cannot be started.
    """
    command = [str(binary), *args]
    log.info(f"Starting process: {' '.join(command)}...")

    popen_kwargs = _get_popen_creation_flags()
    env = build_service_env(env_overrides)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "ab") as output:
            p = subprocess.Popen(command, stdout=output, stderr=subprocess.STDOUT, stdin=subprocess.DEVNULL, env=env, **popen_kwargs)
    else:
        p = subprocess.Popen(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, stdin=subprocess.DEVNULL, env=env, **popen_kwargs)

    log.info(f"{binary.name} started with PID: {p.pid}")
    return p

#* --- Exit Watching ---
def describe_exit(returncode: Optional[int]) -> str:
    """Human-readable exit detail: 'code=1' or 'signal=15'."""
    if returncode is None:
        return "code=unknown"
    if returncode < 0:
        return f"signal={-returncode}"
    return f"code={returncode}"

def _wait_for_exit(process: subprocess.Popen, on_exit: Callable[[Optional[int]], None],
                   on_error: Callable[[Exception], None]) -> None:
    """Target function for the exit watcher thread."""
    try:
        returncode = process.wait()
    except Exception as e:
        log.error(f"Waiting on process {process.pid} failed: {e}", exc_info=True)
        on_error(e)
        return
    on_exit(returncode)

def watch_process_exit(process: subprocess.Popen, on_exit: Callable[[Optional[int]], None],
                       on_error: Callable[[Exception], None]) -> threading.Thread:
    """Starts a daemon thread that reports the child's exit status."""
    watcher = threading.Thread(
        target=_wait_for_exit,
        args=(process, on_exit, on_error),
        daemon=True,
        name=f"ExitWatcher-{process.pid}"
    )
    watcher.start()
    return watcher
