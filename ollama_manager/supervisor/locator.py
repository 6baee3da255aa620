import os
import sys
import ntpath
import shutil
import logging
import platform as platform_module
from pathlib import Path
from typing import List, Mapping, NamedTuple, Optional

from ollama_manager.local.config import effective_settings as config
from .process_utils import get_executable_path

log = logging.getLogger(__name__)


class CandidateStatus(NamedTuple):
    path: Path
    exists: bool
    executable: bool


def _is_arm(machine: str) -> bool:
    return machine.lower() in ("arm64", "aarch64") or machine.lower().startswith("arm")


def is_executable_file(path: Path) -> bool:
    """True if `path` is an existing regular file the current user may execute."""
    try:
        return path.is_file() and os.access(path, os.X_OK)
    except OSError:
        return False


class BinaryLocator:
    """
    Resolves the filesystem path of the supervised executable.

    The candidate list is rebuilt on every call, so a change to the override
    environment variable between two starts is honoured.
    """

    def __init__(self, name: str = None, env_var: str = None, platform: str = None,
                 machine: str = None, environ: Mapping[str, str] = None):
        self.name = name or config.SERVICE_NAME
        self.env_var = env_var or config.BINARY_ENV_VAR
        self.platform = platform or sys.platform
        self.machine = machine or platform_module.machine()
        self.environ = environ if environ is not None else os.environ

    def _platform_paths(self) -> List[Path]:
        """Well-known install locations for the current OS and architecture."""
        name = self.name
        if self.platform == "darwin":
            homebrew = Path("/opt/homebrew/bin") / name
            usr_local = Path("/usr/local/bin") / name
            # Apple Silicon Homebrew lives in /opt/homebrew, Intel Homebrew in /usr/local.
            return [homebrew, usr_local] if _is_arm(self.machine) else [usr_local, homebrew]
        if self.platform.startswith("linux"):
            return [Path("/usr/local/bin") / name, Path("/usr/bin") / name, Path("/snap/bin") / name]
        if self.platform == "win32":
            exe = get_executable_path(Path(name), self.platform).name
            program_files = self.environ.get("ProgramFiles", r"C:\Program Files")
            paths = [Path(ntpath.join(program_files, "Ollama", exe))]
            local_app_data = self.environ.get("LOCALAPPDATA")
            if local_app_data:
                paths.append(Path(ntpath.join(local_app_data, "Programs", "Ollama", exe)))
            return paths
        return []

    def _path_lookup(self) -> Optional[Path]:
        exe = get_executable_path(Path(self.name), self.platform).name
        found = shutil.which(exe, path=self.environ.get("PATH"))
        return Path(found) if found else None

    def candidates(self) -> List[Path]:
        """
        Builds the ordered candidate list: environment override, platform
        locations, then a PATH lookup. Duplicates keep their first position.
        """
        ordered: List[Path] = []
        override = self.environ.get(self.env_var)
        if override:
            ordered.append(Path(override).expanduser())
        ordered.extend(self._platform_paths())
        on_path = self._path_lookup()
        if on_path is not None:
            ordered.append(on_path)

        unique: List[Path] = []
        for path in ordered:
            if path not in unique:
                unique.append(path)
        return unique

    def resolve(self) -> Optional[Path]:
        """
        Returns the first candidate that exists and is executable.

        :return: The binary path, or None if no candidate qualifies.
        """
        for path in self.candidates():
            if is_executable_file(path):
                log.info(f"Found {self.name} binary: {path}")
                return path
            log.debug(f"Binary candidate rejected: {path}")
        log.warning(f"No usable {self.name} binary found. Install from {config.INSTALL_URL} or set {self.env_var}.")
        return None

    def describe_candidates(self) -> List[CandidateStatus]:
        """Reports existence and executability for every candidate."""
        return [CandidateStatus(path, path.exists(), is_executable_file(path)) for path in self.candidates()]


def check_configuration(locator: BinaryLocator = None) -> bool:
    """
    Validates that the supervised executable can be found.

    :return: True if at least one candidate is usable, otherwise False.
    """
    locator = locator or BinaryLocator()
    log.info("Performing binary path validation...")
    found = False
    for status in locator.describe_candidates():
        if status.executable:
            log.info(f"Config Check OK: Found {locator.name} at '{status.path}'")
            found = True
        elif status.exists:
            log.error(f"CONFIG CHECK FAILED: '{status.path}' exists but is not executable")
        else:
            log.info(f"Config Check: {locator.name} not found at '{status.path}'")
    if not found:
        log.error(f"CONFIG CHECK FAILED: no usable {locator.name} binary. Install from {config.INSTALL_URL} or set {locator.env_var}.")
    return found
