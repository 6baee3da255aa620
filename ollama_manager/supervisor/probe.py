"""
Platform-specific process discovery, memory sampling and signalling.

Each probe answers the same three questions about the supervised service:
is it running, how much resident memory do its processes use, and how to
signal it. One implementation is chosen per supervisor by `select_probe()`.
Probes identify the service by name, never by a stored PID, so a service
started outside the supervisor is handled the same way as one it spawned.

Parsing of OS tool output never raises: rows that cannot be parsed are
skipped and a failing tool is treated as "no matching processes".
"""
import io
import re
import csv
import sys
import logging
import ntpath
import posixpath
import subprocess
from enum import Enum
from typing import Callable, List, NamedTuple, Optional

import psutil

from ollama_manager.local.config import effective_settings as config
from .errors import SignalError

log = logging.getLogger(__name__)

# Separators used by different locales for thousands grouping.
_GROUP_SEPARATORS = re.compile(r"[,.\s\u00a0\u202f']")
_TASKLIST_MEMORY = re.compile(r"([\d.,\s\u00a0\u202f']+?)\s*K\b", re.IGNORECASE)


class SignalKind(Enum):
    GRACEFUL = "graceful"
    FORCEFUL = "forceful"


class ProcessEntry(NamedTuple):
    pid: int
    rss_bytes: int
    command: str


#* --- Output Parsing ---
def parse_int(text: str) -> Optional[int]:
    """Parses an integer that may carry locale thousands separators."""
    digits = _GROUP_SEPARATORS.sub("", text or "")
    if not digits.isdigit():
        return None
    return int(digits)

def _program_name(command: str) -> str:
    executable = command.split(None, 1)[0] if command.strip() else ""
    return posixpath.basename(executable)

def parse_ps_output(output: str, process_name: str) -> List[ProcessEntry]:
    """
    Parses `ps -eo pid=,rss=,args=` output, keeping rows whose program is `process_name`.
    RSS is reported by ps in KiB.
    """
    entries = []
    for line in output.splitlines():
        parts = line.split(None, 2)
        if len(parts) < 3:
            continue
        pid, rss = parse_int(parts[0]), parse_int(parts[1])
        if pid is None or rss is None:
            log.debug(f"Skipping unparsable ps row: {line!r}")
            continue
        command = parts[2].strip()
        if _program_name(command) != process_name:
            continue
        entries.append(ProcessEntry(pid, rss * 1024, command))
    return entries

def parse_tasklist_csv(output: str, image_name: str) -> List[ProcessEntry]:
    """
    Parses `tasklist /FO CSV /NH` output. The image name is the first column,
    the PID the second and the memory usage ("12,345 K") the last.
    """
    entries = []
    try:
        rows = list(csv.reader(io.StringIO(output)))
    except csv.Error as e:
        log.warning(f"Could not parse tasklist output: {e}")
        return entries

    for row in rows:
        if len(row) < 3 or row[0].strip().lower() != image_name.lower():
            continue
        pid = parse_int(row[1])
        match = _TASKLIST_MEMORY.search(row[-1])
        kilobytes = parse_int(match.group(1)) if match else parse_int(row[-1])
        if pid is None or kilobytes is None:
            log.debug(f"Skipping unparsable tasklist row: {row!r}")
            continue
        entries.append(ProcessEntry(pid, kilobytes * 1024, row[0].strip()))
    return entries


#* --- Probes ---
class ProcessProbe:
    """Common interface of all probes."""

    def __init__(self, process_name: str = None, signature: str = None):
        self.process_name = process_name or config.SERVICE_NAME
        self.signature = signature or config.SERVICE_COMMAND_SIGNATURE

    def list_matching(self) -> List[ProcessEntry]:
        """All processes belonging to the service, including helper processes."""
        raise NotImplementedError

    def is_running(self) -> bool:
        raise NotImplementedError

    def send_signal(self, kind: SignalKind) -> None:
        """
        Signals every process of the service.

        :raises SignalError: If the signalling mechanism itself fails.
        """
        raise NotImplementedError

    def sample_memory(self) -> int:
        """Total resident memory in bytes; 0 when nothing matches."""
        return sum(entry.rss_bytes for entry in self.list_matching())


class CommandProbe(ProcessProbe):
    """A probe backed by OS command-line tools."""

    def __init__(self, process_name: str = None, signature: str = None,
                 runner: Callable[..., subprocess.CompletedProcess] = None, timeout: float = None):
        super().__init__(process_name, signature)
        self._run = runner or subprocess.run
        self.timeout = timeout or config.PROBE_COMMAND_TIMEOUT

    def _execute(self, command: List[str]) -> subprocess.CompletedProcess:
        """Runs a tool. OSError and timeouts propagate to the caller."""
        return self._run(command, capture_output=True, text=True, errors="replace",
                         timeout=self.timeout, check=False)

    def _query(self, command: List[str]) -> Optional[subprocess.CompletedProcess]:
        try:
            return self._execute(command)
        except (OSError, subprocess.SubprocessError) as e:
            log.warning(f"Process query '{command[0]}' failed: {e}")
            return None

    def _signal(self, command: List[str], ok_codes: tuple) -> None:
        try:
            result = self._execute(command)
        except (OSError, subprocess.SubprocessError) as e:
            raise SignalError(f"Could not run '{command[0]}': {e}") from e
        if result.returncode not in ok_codes:
            detail = (result.stderr or result.stdout or "").strip()
            raise SignalError(f"'{' '.join(command)}' failed with exit status {result.returncode}: {detail}")


class PosixProbe(CommandProbe):
    """macOS and Linux: pgrep / ps / pkill."""

    def is_running(self) -> bool:
        result = self._query(["pgrep", "-f", self.signature])
        if result is None or result.returncode != 0:
            return False
        return any(line.strip() for line in result.stdout.splitlines())

    def list_matching(self) -> List[ProcessEntry]:
        result = self._query(["ps", "-eo", "pid=,rss=,args="])
        if result is None or result.returncode != 0:
            return []
        return parse_ps_output(result.stdout, self.process_name)

    def send_signal(self, kind: SignalKind) -> None:
        flag = "-TERM" if kind is SignalKind.GRACEFUL else "-KILL"
        # pkill exits with 1 when nothing matched, which is not a failure here.
        self._signal(["pkill", flag, "-f", self.signature], ok_codes=(0, 1))


class WindowsProbe(CommandProbe):
    """Windows: tasklist / taskkill by image name."""

    TASKKILL_NOT_FOUND = 128

    @property
    def image_name(self) -> str:
        name = self.process_name
        return name if name.lower().endswith(".exe") else f"{name}.exe"

    def list_matching(self) -> List[ProcessEntry]:
        result = self._query(["tasklist", "/FI", f"IMAGENAME eq {self.image_name}", "/FO", "CSV", "/NH"])
        if result is None or result.returncode != 0:
            return []
        return parse_tasklist_csv(result.stdout, self.image_name)

    def is_running(self) -> bool:
        return bool(self.list_matching())

    def send_signal(self, kind: SignalKind) -> None:
        command = ["taskkill", "/IM", self.image_name]
        if kind is SignalKind.FORCEFUL:
            command.append("/F")
        self._signal(command, ok_codes=(0, self.TASKKILL_NOT_FOUND))


class PsutilProbe(ProcessProbe):
    """Cross-platform probe using psutil instead of OS tools."""

    def _name_matches(self, name: Optional[str]) -> bool:
        if not name:
            return False
        name = name.lower()
        target = self.process_name.lower()
        return name == target or name == f"{target}.exe"

    def _signature_matches(self, cmdline: Optional[List[str]]) -> bool:
        if not cmdline:
            return False
        program = ntpath.basename(posixpath.basename(cmdline[0]))
        if program.lower().endswith(".exe"):
            program = program[:-4]
        return self.signature in " ".join([program, *cmdline[1:]])

    def list_matching(self) -> List[ProcessEntry]:
        entries = []
        for proc in psutil.process_iter(["pid", "name", "cmdline", "memory_info"]):
            info = proc.info
            if not self._name_matches(info.get("name")) or info.get("memory_info") is None:
                continue
            command = " ".join(info.get("cmdline") or []) or info["name"]
            entries.append(ProcessEntry(info["pid"], info["memory_info"].rss, command))
        return entries

    def _service_processes(self) -> List[psutil.Process]:
        return [
            proc for proc in psutil.process_iter(["pid", "cmdline"])
            if self._signature_matches(proc.info.get("cmdline"))
        ]

    def is_running(self) -> bool:
        return bool(self._service_processes())

    def send_signal(self, kind: SignalKind) -> None:
        for proc in self._service_processes():
            try:
                if kind is SignalKind.GRACEFUL:
                    proc.terminate()
                else:
                    proc.kill()
            except psutil.NoSuchProcess:
                log.debug(f"Process {proc.pid} no longer exists, skipping.")
            except psutil.Error as e:
                raise SignalError(f"Could not signal process {proc.pid}: {e}") from e


def select_probe(platform: str = None, backend: str = None, **kwargs) -> ProcessProbe:
    """
    Chooses the probe implementation once, from the platform and the configured backend.

    :param platform: A `sys.platform` value; defaults to the current one.
    :param backend: 'command' or 'psutil'; defaults to the PROBE_BACKEND setting.
    """
    platform = platform or sys.platform
    backend = (backend or config.PROBE_BACKEND).lower()

    if backend == "psutil":
        return PsutilProbe(kwargs.get("process_name"), kwargs.get("signature"))
    if backend != "command":
        log.warning(f"Unknown probe backend '{backend}'. Falling back to 'command'.")
    if platform == "win32":
        return WindowsProbe(**kwargs)
    return PosixProbe(**kwargs)
