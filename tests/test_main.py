"""Tests for the command-line entry point."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List
from unittest.mock import patch

import pytest

from rebuild_watcher.errors import WatcherFailedError, WatchRootNotFoundError
from rebuild_watcher.main import build_parser, main, setup_logging

PACKAGE_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture(autouse=True)
def restore_root_logger() -> Generator[None, None, None]:
    """main() reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def project(isolated_env: Path) -> Path:
    (isolated_env / "convex").mkdir()
    return isolated_env


def py_shell(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def run_main(argv: List[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


def test_setup_logging_invalid_level() -> None:
    with pytest.raises(ValueError, match="Invalid log level"):
        setup_logging("LOUD", None)


def test_setup_logging_with_file(temp_dir: Path) -> None:
    log_file = temp_dir / "logs" / "watcher.log"
    setup_logging("DEBUG", str(log_file))

    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)
    assert log_file.parent.is_dir()

    logging.getLogger("rebuild_watcher.test").info("hello file")
    for handler in root.handlers:
        handler.flush()
    assert "[INFO] rebuild_watcher.test: hello file" in log_file.read_text()


def test_setup_logging_unwritable_file_warns(temp_dir: Path, capsys: pytest.CaptureFixture) -> None:
    blocker = temp_dir / "blocker"
    blocker.write_text("x")
    setup_logging("INFO", str(blocker / "watcher.log"))

    assert "Failed to setup log file" in capsys.readouterr().err
    assert not any(isinstance(h, RotatingFileHandler) for h in logging.getLogger().handlers)


def test_parser_flags() -> None:
    args = build_parser().parse_args(["--watch-path", "src", "--debounce-ms", "50", "--no-recursive"])
    assert args.watch_path == "src"
    assert args.debounce_ms == 50
    assert args.no_recursive is True
    assert args.schema_only is None


def test_invalid_config_exits_1(project: Path, mock_signal: Dict[int, Callable[..., None]]) -> None:
    assert run_main(["--debounce-ms", "0"]) == 1


def test_missing_runtime_exits_1(
    project: Path, mock_signal: Dict[int, Callable[..., None]], capsys: pytest.CaptureFixture
) -> None:
    with patch("rebuild_watcher.main.can_execute", return_value=False) as probe, \
            patch("rebuild_watcher.main.DirWatcher") as dir_watcher:
        assert run_main([]) == 1

    probe.assert_called_once_with("bun")
    dir_watcher.assert_not_called()
    out = capsys.readouterr().out
    assert "Runtime 'bun' is not installed or not on PATH" in out
    assert "https://bun.sh" in out


def test_initial_failure_exits_1_without_watching(
    project: Path, mock_signal: Dict[int, Callable[..., None]], capsys: pytest.CaptureFixture
) -> None:
    with patch("rebuild_watcher.main.DirWatcher") as dir_watcher:
        code = run_main(["--convex-command", py_shell("import sys; sys.exit(1)")])

    assert code == 1
    dir_watcher.assert_not_called()
    assert "Initial run failed. Not starting watcher." in capsys.readouterr().out


def test_signal_after_start_exits_0(
    project: Path, mock_signal: Dict[int, Callable[..., None]], capsys: pytest.CaptureFixture
) -> None:
    with patch("rebuild_watcher.main.DirWatcher") as dir_watcher:
        dir_watcher.return_value.start.side_effect = (
            lambda: mock_signal[signal.SIGINT](signal.SIGINT, None)
        )
        code = run_main(["--convex-command", py_shell("pass"), "--debounce-ms", "150"])

    assert code == 0
    assert set(mock_signal) == {signal.SIGINT, signal.SIGTERM}
    kwargs = dir_watcher.call_args.kwargs
    assert dir_watcher.call_args.args[0] == str((project / "convex").resolve())
    assert kwargs["debounce_ms"] == 150
    assert kwargs["recursive"] is True
    assert kwargs["should_ignore"]("_generated/api.ts")
    assert dir_watcher.return_value.stop.called

    out = capsys.readouterr().out
    assert "Watching for changes..." in out
    assert "Received signal SIGINT, shutting down..." in out
    assert "Shutdown complete. Runs=1" in out


def test_watcher_start_failure_exits_1(
    project: Path, mock_signal: Dict[int, Callable[..., None]]
) -> None:
    with patch("rebuild_watcher.main.DirWatcher") as dir_watcher:
        dir_watcher.return_value.start.side_effect = WatchRootNotFoundError("Watch root not found")
        code = run_main(["--convex-command", py_shell("pass")])
    assert code == 1


def test_watcher_failure_while_running_exits_1(
    project: Path, mock_signal: Dict[int, Callable[..., None]], capsys: pytest.CaptureFixture
) -> None:
    with patch("rebuild_watcher.main.DirWatcher") as dir_watcher:
        dir_watcher.return_value.start.side_effect = lambda: dir_watcher.call_args.kwargs["on_error"](
            WatcherFailedError("Watchdog observer thread died")
        )
        code = run_main(["--convex-command", py_shell("pass")])

    assert code == 1
    assert "Fatal watcher error: Watchdog observer thread died" in capsys.readouterr().out


def test_change_triggers_rebuild(
    project: Path, mock_signal: Dict[int, Callable[..., None]]
) -> None:
    marker = project / "runs.txt"
    command = py_shell(f"open({str(marker)!r}, 'a').write('x')")

    def fake_start() -> None:
        on_change = dir_watcher.call_args.kwargs["on_change"]
        on_change("queries.ts")
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline and marker.read_text() != "xx":
            time.sleep(0.02)
        mock_signal[signal.SIGTERM](signal.SIGTERM, None)

    with patch("rebuild_watcher.main.DirWatcher") as dir_watcher:
        dir_watcher.return_value.start.side_effect = fake_start
        code = run_main(["--convex-command", command])

    assert code == 0
    assert marker.read_text() == "xx"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals required")
def test_signal_during_rebuild_cancels_it(
    project: Path,
    mock_signal: Dict[int, Callable[..., None]],
    shell_sleeper: Callable[..., Any],
    wait_for: Callable[..., bool],
    capsys: pytest.CaptureFixture,
) -> None:
    child = shell_sleeper(succeed_first=True)
    elapsed: List[float] = []

    def fake_start() -> None:
        dir_watcher.call_args.kwargs["on_change"]("queries.ts")
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline and not child.ready.exists():
            time.sleep(0.02)
        assert child.ready.exists()
        elapsed.append(time.monotonic())
        mock_signal[signal.SIGTERM](signal.SIGTERM, None)

    with patch("rebuild_watcher.main.DirWatcher") as dir_watcher:
        dir_watcher.return_value.start.side_effect = fake_start
        code = run_main(["--convex-command", child.command])

    assert code == 0
    assert time.monotonic() - elapsed[0] < 5.0
    assert wait_for(child.interrupted.exists)
    out = capsys.readouterr().out
    assert "Cancelling run #2..." in out
    assert "Shutdown complete. Runs=2 (ok=1, failed=0, cancelled=1)" in out


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals required")
def test_end_to_end_sigint(project: Path) -> None:
    log_file = project / "watcher.log"
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(PACKAGE_ROOT), env.get("PYTHONPATH")]))
    proc = subprocess.Popen(
        [
            sys.executable, "-m", "rebuild_watcher.main",
            "--convex-command", py_shell("pass"),
            "--log-file", str(log_file),
        ],
        cwd=str(project),
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    try:
        deadline = time.monotonic() + 15
        while time.monotonic() < deadline:
            if log_file.exists() and "Watching " in log_file.read_text():
                break
            time.sleep(0.05)
        else:
            pytest.fail("watcher did not start")

        proc.send_signal(signal.SIGINT)
        assert proc.wait(timeout=15) == 0
        assert "Shutdown complete" in log_file.read_text()
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
