import subprocess
from types import SimpleNamespace

import psutil
import pytest

from ollama_manager.supervisor import SignalError, SignalKind
from ollama_manager.supervisor import probe as probe_module
from ollama_manager.supervisor.probe import (
    PosixProbe, PsutilProbe, WindowsProbe, parse_int, parse_ps_output, parse_tasklist_csv, select_probe,
)

KIB = 1024

PS_OUTPUT = """\
  101  12,345 /usr/local/bin/ollama serve
  102    2048 /usr/local/bin/ollama runner --model /models/llama3 --port 40125
  103     999 /usr/bin/python3 ollama_client.py
  104     abc /usr/local/bin/ollama serve
garbage
  105     512 ollama serve
"""


class FakeRunner:
    """Answers commands from a table keyed by the program name."""

    def __init__(self, answers):
        self.answers = answers
        self.commands = []

    def __call__(self, command, **kwargs):
        self.commands.append(command)
        answer = self.answers[command[0]]
        if isinstance(answer, Exception):
            raise answer
        returncode, stdout = answer
        return subprocess.CompletedProcess(command, returncode, stdout, "")


@pytest.mark.parametrize("text, expected", [
    ("12345", 12345),
    ("12,345", 12345),
    ("12.345", 12345),
    ("12\u00a0345", 12345),
    ("1'234'567", 1234567),
    ("", None),
    ("abc", None),
])
def test_parse_int_accepts_locale_grouping(text, expected):
    assert parse_int(text) == expected


def test_parse_ps_output_sums_all_service_processes():
    entries = parse_ps_output(PS_OUTPUT, "ollama")

    assert [entry.pid for entry in entries] == [101, 102, 105]
    assert entries[0].rss_bytes == 12345 * KIB
    assert sum(entry.rss_bytes for entry in entries) == (12345 + 2048 + 512) * KIB


def test_parse_ps_output_without_matches_is_empty():
    assert parse_ps_output("  1  100 /sbin/init\n", "ollama") == []
    assert parse_ps_output("", "ollama") == []


def test_parse_tasklist_csv():
    output = (
        '"ollama.exe","4321","Console","1","1,234,567 K"\r\n'
        '"ollama.exe","4322","Console","1","2.048 K"\r\n'
        '"ollama app.exe","4323","Console","1","9,999 K"\r\n'
    )

    entries = parse_tasklist_csv(output, "ollama.exe")

    assert [entry.pid for entry in entries] == [4321, 4322]
    assert [entry.rss_bytes for entry in entries] == [1234567 * KIB, 2048 * KIB]


def test_parse_tasklist_csv_handles_no_tasks_message():
    output = "INFO: No tasks are running which match the specified criteria.\r\n"

    assert parse_tasklist_csv(output, "ollama.exe") == []


def test_parse_tasklist_csv_with_narrow_no_break_space():
    output = '"ollama.exe","10","Console","1","12\u202f345 K"\n'

    [entry] = parse_tasklist_csv(output, "OLLAMA.EXE")

    assert entry.rss_bytes == 12345 * KIB


def test_posix_probe_is_running_uses_pgrep_signature():
    runner = FakeRunner({"pgrep": (0, "101\n")})
    probe = PosixProbe("ollama", "ollama serve", runner=runner)

    assert probe.is_running()
    assert runner.commands == [["pgrep", "-f", "ollama serve"]]


def test_posix_probe_not_running_when_pgrep_finds_nothing():
    probe = PosixProbe("ollama", "ollama serve", runner=FakeRunner({"pgrep": (1, "")}))

    assert not probe.is_running()


def test_posix_probe_memory_sample():
    probe = PosixProbe("ollama", "ollama serve", runner=FakeRunner({"ps": (0, PS_OUTPUT)}))

    assert probe.sample_memory() == (12345 + 2048 + 512) * KIB


def test_posix_probe_degrades_when_tools_are_missing():
    runner = FakeRunner({"pgrep": FileNotFoundError("pgrep"), "ps": FileNotFoundError("ps")})
    probe = PosixProbe("ollama", "ollama serve", runner=runner)

    assert not probe.is_running()
    assert probe.list_matching() == []
    assert probe.sample_memory() == 0


def test_posix_probe_degrades_on_timeout():
    runner = FakeRunner({"ps": subprocess.TimeoutExpired(["ps"], 5)})

    assert PosixProbe("ollama", "ollama serve", runner=runner).list_matching() == []


@pytest.mark.parametrize("kind, flag", [(SignalKind.GRACEFUL, "-TERM"), (SignalKind.FORCEFUL, "-KILL")])
def test_posix_probe_send_signal(kind, flag):
    runner = FakeRunner({"pkill": (0, "")})

    PosixProbe("ollama", "ollama serve", runner=runner).send_signal(kind)

    assert runner.commands == [["pkill", flag, "-f", "ollama serve"]]


def test_posix_probe_nothing_to_signal_is_not_an_error():
    PosixProbe("ollama", "ollama serve", runner=FakeRunner({"pkill": (1, "")})).send_signal(SignalKind.GRACEFUL)


def test_posix_probe_signal_failure_raises():
    probe = PosixProbe("ollama", "ollama serve", runner=FakeRunner({"pkill": (2, "")}))

    with pytest.raises(SignalError):
        probe.send_signal(SignalKind.GRACEFUL)


def test_posix_probe_missing_pkill_raises():
    probe = PosixProbe("ollama", "ollama serve", runner=FakeRunner({"pkill": FileNotFoundError("pkill")}))

    with pytest.raises(SignalError):
        probe.send_signal(SignalKind.FORCEFUL)


def test_windows_probe_uses_image_name():
    output = '"ollama.exe","4321","Console","1","1,024 K"\r\n'
    runner = FakeRunner({"tasklist": (0, output), "taskkill": (0, "")})
    probe = WindowsProbe("ollama", "ollama serve", runner=runner)

    assert probe.is_running()
    assert probe.sample_memory() == 1024 * KIB
    probe.send_signal(SignalKind.FORCEFUL)

    assert runner.commands[0] == ["tasklist", "/FI", "IMAGENAME eq ollama.exe", "/FO", "CSV", "/NH"]
    assert runner.commands[-1] == ["taskkill", "/IM", "ollama.exe", "/F"]


def test_windows_probe_taskkill_not_found_is_not_an_error():
    probe = WindowsProbe("ollama", "ollama serve", runner=FakeRunner({"taskkill": (128, "")}))

    probe.send_signal(SignalKind.GRACEFUL)


def _fake_proc(pid, name, cmdline, rss=0):
    proc = SimpleNamespace(
        pid=pid,
        info={"pid": pid, "name": name, "cmdline": cmdline, "memory_info": SimpleNamespace(rss=rss)},
        terminated=False,
        killed=False,
    )
    proc.terminate = lambda: setattr(proc, "terminated", True)
    proc.kill = lambda: setattr(proc, "killed", True)
    return proc


def test_psutil_probe(monkeypatch):
    procs = [
        _fake_proc(1, "ollama", ["/usr/local/bin/ollama", "serve"], rss=100 * KIB),
        _fake_proc(2, "ollama", ["/usr/local/bin/ollama", "runner", "--port", "1"], rss=50 * KIB),
        _fake_proc(3, "python3", ["python3", "client.py"], rss=7 * KIB),
    ]
    monkeypatch.setattr(probe_module.psutil, "process_iter", lambda attrs=None: iter(procs))
    probe = PsutilProbe("ollama", "ollama serve")

    assert probe.sample_memory() == 150 * KIB
    assert probe.is_running()

    probe.send_signal(SignalKind.GRACEFUL)

    assert [proc.terminated for proc in procs] == [True, False, False]


def test_psutil_probe_access_denied_raises_signal_error(monkeypatch):
    proc = _fake_proc(1, "ollama.exe", [r"C:\Ollama\ollama.exe", "serve"])

    def denied():
        raise psutil.AccessDenied(1)

    proc.kill = denied
    monkeypatch.setattr(probe_module.psutil, "process_iter", lambda attrs=None: iter([proc]))

    with pytest.raises(SignalError):
        PsutilProbe("ollama", "ollama serve").send_signal(SignalKind.FORCEFUL)


@pytest.mark.parametrize("platform, backend, expected", [
    ("linux", "command", PosixProbe),
    ("darwin", "command", PosixProbe),
    ("win32", "command", WindowsProbe),
    ("linux", "psutil", PsutilProbe),
    ("win32", "PSUTIL", PsutilProbe),
    ("linux", "unknown", PosixProbe),
])
def test_select_probe(platform, backend, expected):
    assert type(select_probe(platform=platform, backend=backend)) is expected
