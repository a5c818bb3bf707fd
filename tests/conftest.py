from __future__ import annotations

import os
import shlex
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Optional, Tuple
from unittest.mock import MagicMock, patch

import pytest

from rebuild_watcher.runner import ProcessRunner


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    The path is resolved so that comparisons with watcher paths are stable on
    platforms where the temp dir is a symlink (macOS).
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname).resolve()


@pytest.fixture
def runner() -> ProcessRunner:
    return ProcessRunner()


@pytest.fixture
def py_cmd() -> Callable[[str], Tuple[str, ...]]:
    """Build an argv that runs a Python snippet with the current interpreter."""
    def _cmd(code: str) -> Tuple[str, ...]:
        return (sys.executable, "-c", code)
    return _cmd


@pytest.fixture
def sleeper(py_cmd: Callable[[str], Tuple[str, ...]]) -> Tuple[str, ...]:
    """A process that sleeps until interrupted and exits 130 on SIGINT."""
    return py_cmd(
        "import signal, sys, time\n"
        "signal.signal(signal.SIGINT, lambda *a: sys.exit(130))\n"
        "time.sleep(30)\n"
    )


class ShellSleeper:
    """A shell-string command wrapping a Python child that records SIGINT.

    The child touches ``ready`` once its handler is installed and ``interrupted``
    when SIGINT reaches it. With ``succeed_first`` the first invocation exits 0
    immediately and only later invocations sleep.
    """

    def __init__(self, directory: Path, succeed_first: bool = False) -> None:
        self.ready = directory / "ready"
        self.interrupted = directory / "interrupted"
        first = directory / "first-run"
        code = (
            "import os, signal, sys, time\n"
            f"first = {str(first)!r}\n"
            f"if {succeed_first!r} and not os.path.exists(first):\n"
            "    open(first, 'w').close()\n"
            "    sys.exit(0)\n"
            "def stop(*args):\n"
            f"    open({str(self.interrupted)!r}, 'w').close()\n"
            "    sys.exit(130)\n"
            "signal.signal(signal.SIGINT, stop)\n"
            f"open({str(self.ready)!r}, 'w').close()\n"
            "time.sleep(30)\n"
        )
        # A trailing command keeps the shell from exec-ing python directly.
        self.command = f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}; exit $?"


@pytest.fixture
def shell_sleeper(temp_dir: Path) -> Callable[..., ShellSleeper]:
    def _make(succeed_first: bool = False) -> ShellSleeper:
        return ShellSleeper(temp_dir, succeed_first)
    return _make


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    """Poll a predicate until it is true or the timeout expires."""
    def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait_for


class Background:
    """Run a callable on a thread and keep its result or exception."""

    def __init__(self, func: Callable[[], Any]) -> None:
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.thread = threading.Thread(target=self._run, args=(func,), daemon=True)
        self.thread.start()

    def _run(self, func: Callable[[], Any]) -> None:
        try:
            self.result = func()
        except BaseException as e:
            self.error = e

    def join(self, timeout: float = 10.0) -> "Background":
        self.thread.join(timeout)
        assert not self.thread.is_alive(), "background call did not finish"
        return self


@pytest.fixture
def background() -> Callable[[Callable[[], Any]], Background]:
    return Background


@pytest.fixture
def mock_observer() -> Generator[MagicMock, None, None]:
    """Fixture for mocking the watchdog Observer."""
    with patch("rebuild_watcher.watcher.Observer") as mock:
        mock.return_value.is_alive.return_value = True
        yield mock


@pytest.fixture
def mock_signal() -> Generator[Dict[int, Callable[..., None]], None, None]:
    """Patch signal.signal and expose the registered handlers."""
    handlers: Dict[int, Callable[..., None]] = {}

    def _register(sig: int, handler: Callable[..., None]) -> None:
        handlers[sig] = handler

    with patch("rebuild_watcher.main.signal.signal", side_effect=_register):
        yield handlers


@pytest.fixture
def isolated_env(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run in an empty working directory with no config files or env overrides."""
    work = temp_dir / "work"
    work.mkdir()
    xdg = temp_dir / "xdg"
    xdg.mkdir()
    monkeypatch.chdir(work)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    for key in list(os.environ):
        if key.startswith("REBUILD_WATCHER_"):
            monkeypatch.delenv(key)
    return work
