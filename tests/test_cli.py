"""End-to-end tests for the command line entry point."""

import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from rich.console import Console

from git_gc.cli import EXIT_ERROR, EXIT_INTERRUPTED, EXIT_OK, build_parser, main, resolve_settings
from git_gc.scheduler import CancelPolicy
from tests.fakes import make_slow_git, wait_for_started

PACKAGE_ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture(autouse=True)
def wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    # Long tmp paths must not wrap in captured output
    monkeypatch.setattr("git_gc.cli.console", Console(width=500, color_system=None))


def make_tree(root: Path, names: list[str]) -> list[str]:
    for name in names:
        (root / name / ".git").mkdir(parents=True)
    return [str((root / name).resolve()) for name in sorted(names)]


def repo_of(cmd: list[str]) -> str:
    return cmd[cmd.index("-C") + 1]


def make_proc(returncode: int) -> MagicMock:
    proc = MagicMock()
    proc.wait.return_value = returncode
    return proc


# ---------------------------------------------------------------------------
# Argument handling
# ---------------------------------------------------------------------------


def test_parallel_must_be_positive() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--parallel", "0"])


def test_resolve_settings_merges_flags(tmp_path: Path) -> None:
    config = tmp_path / "c.yaml"
    config.write_text("parallel: 3\ngc_args: [--quiet]\n")
    args = build_parser().parse_args([
        "--config", str(config),
        "--aggressive",
        "--gc-arg", "--prune=now",
        "--cancel-policy", "drain",
    ])

    settings = resolve_settings(args)
    assert settings.parallel == 3
    assert settings.gc_args == ["--quiet", "--aggressive", "--prune=now"]
    assert settings.cancel_policy is CancelPolicy.DRAIN


def test_flags_override_config(tmp_path: Path) -> None:
    config = tmp_path / "c.yaml"
    config.write_text("parallel: 3\nroot: /nowhere\n")
    args = build_parser().parse_args(["--config", str(config), "--parallel", "5", "--root", str(tmp_path)])

    settings = resolve_settings(args)
    assert settings.parallel == 5
    assert settings.root == str(tmp_path)


def test_bad_config_exits_with_error(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    config = tmp_path / "c.yaml"
    config.write_text("bogus: 1\n")
    assert main(["--config", str(config), "--root", str(tmp_path)]) == EXIT_ERROR
    assert "bogus" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def test_missing_root_exits_with_error(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    code = main(["--root", str(tmp_path / "missing")])
    assert code == EXIT_ERROR
    assert "does not exist" in capsys.readouterr().out


@patch("git_gc.worker.subprocess.Popen")
def test_dry_run_lists_repositories(mock_popen: MagicMock, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    repos = make_tree(tmp_path, ["a", "b"])

    assert main(["--root", str(tmp_path), "--dry-run"]) == EXIT_OK

    out = capsys.readouterr().out
    for repo in repos:
        assert repo in out
    mock_popen.assert_not_called()


@patch("git_gc.worker.subprocess.Popen")
def test_full_run(mock_popen: MagicMock, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    repos = make_tree(tmp_path, ["A", "B", "C"])
    mock_popen.return_value = make_proc(0)

    code = main(["--root", str(tmp_path), "--parallel", "2", "--no-progress"])

    assert code == EXIT_OK
    called = sorted(repo_of(c.args[0]) for c in mock_popen.call_args_list)
    assert called == repos
    out = capsys.readouterr().out
    assert "Done! Ran garbage collection on 3 repos." in out
    for repo in repos:
        assert repo in out


@patch("git_gc.worker.subprocess.Popen")
def test_run_with_failed_repository_still_succeeds(
    mock_popen: MagicMock, tmp_path: Path, capsys: pytest.CaptureFixture
) -> None:
    repos = make_tree(tmp_path, ["A", "B", "C"])
    bad = repos[1]
    mock_popen.side_effect = lambda cmd, **kw: make_proc(1 if repo_of(cmd) == bad else 0)

    code = main(["--root", str(tmp_path), "--parallel", "2"])

    assert code == EXIT_OK
    out = capsys.readouterr().out
    assert "Done! Ran garbage collection on 3 repos." in out
    assert "Failed (1)" in out
    assert f"{bad}: git gc exited with code 1" in out


@patch("git_gc.worker.subprocess.Popen")
def test_missing_git_binary_is_not_fatal(
    mock_popen: MagicMock, tmp_path: Path, capsys: pytest.CaptureFixture
) -> None:
    make_tree(tmp_path, ["A", "B"])
    mock_popen.side_effect = FileNotFoundError(2, "No such file or directory")

    assert main(["--root", str(tmp_path)]) == EXIT_OK
    assert "Failed (2)" in capsys.readouterr().out


def test_empty_root_completes(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    assert main(["--root", str(tmp_path)]) == EXIT_OK
    assert "Done! Ran garbage collection on 0 repos." in capsys.readouterr().out


@patch("git_gc.worker.subprocess.Popen")
def test_interrupt_exits_130(mock_popen: MagicMock, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    make_tree(tmp_path, [f"repo{i}" for i in range(5)])
    interrupted = []

    def interrupt_on_first_call(cmd, **kwargs):
        if not interrupted:
            interrupted.append(cmd)
            handler = signal.getsignal(signal.SIGINT)
            handler(signal.SIGINT, None)
        return make_proc(0)

    mock_popen.side_effect = interrupt_on_first_call

    code = main(["--root", str(tmp_path), "--parallel", "1"])

    assert code == EXIT_INTERRUPTED
    assert mock_popen.call_count < 5
    assert "Interrupted" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Signals against a real process
# ---------------------------------------------------------------------------


def start_cli(tmp_path: Path, policy: str, seconds: int) -> tuple[subprocess.Popen, list[str]]:
    """Start ``python -m git_gc`` on two repos whose fake git sleeps *seconds*."""
    git = make_slow_git(tmp_path / "bin", seconds=seconds)
    repos = make_tree(tmp_path / "repos", ["a", "b"])
    config = tmp_path / "git-gc.yaml"
    config.write_text(f'git: "{git}"\nparallel: 2\ncancel_policy: {policy}\n')

    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(PACKAGE_ROOT), env.get("PYTHONPATH")]))
    env["COLUMNS"] = "500"
    env["PYTHONIOENCODING"] = "utf-8"
    proc = subprocess.Popen(
        [
            sys.executable, "-m", "git_gc",
            "--config", str(config),
            "--root", str(tmp_path / "repos"),
            "--no-progress",
        ],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        encoding="utf-8",
        env=env,
    )
    wait_for_started(repos, proc=proc)
    return proc, repos


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signals and sh")


@posix_only
def test_second_interrupt_forces_exit_during_drain(tmp_path: Path) -> None:
    proc, _ = start_cli(tmp_path, "drain", seconds=30)

    start = time.monotonic()
    proc.send_signal(signal.SIGINT)
    time.sleep(0.5)
    assert proc.poll() is None  # still draining
    proc.send_signal(signal.SIGINT)
    out, _ = proc.communicate(timeout=20)
    elapsed = time.monotonic() - start

    assert proc.returncode == EXIT_INTERRUPTED
    assert elapsed < 5, f"force shutdown took {elapsed:.1f}s"
    assert "Force shutdown" in out


@posix_only
def test_sigterm_abandons_running_git(tmp_path: Path) -> None:
    proc, _ = start_cli(tmp_path, "abandon", seconds=30)

    start = time.monotonic()
    proc.send_signal(signal.SIGTERM)
    out, _ = proc.communicate(timeout=20)
    elapsed = time.monotonic() - start

    assert proc.returncode == EXIT_INTERRUPTED
    assert elapsed < 5, f"abandon took {elapsed:.1f}s"
    assert "Interrupted!" in out
    assert "0 of 2 repos" in out


@posix_only
def test_single_interrupt_drains_running_git(tmp_path: Path) -> None:
    proc, repos = start_cli(tmp_path, "drain", seconds=2)

    proc.send_signal(signal.SIGINT)
    out, _ = proc.communicate(timeout=20)

    assert proc.returncode == EXIT_INTERRUPTED
    assert "waiting for running git gc processes" in out
    for repo in repos:
        assert f"✓ {repo}" in out
    assert "Done! Ran garbage collection on 2 repos." in out
