"""Test fixtures and utilities for hfmirror."""

import json
import subprocess
from pathlib import Path
from typing import Any, Callable

import pytest

import hfmirror


SIGNATURE = b"version https://git-lfs.github.com/spec/"


def make_pointer(oid: str, size: int) -> bytes:
    """Return the body of an LFS pointer file."""
    return (
        b"version https://git-lfs.github.com/spec/v1\n"
        + f"oid sha256:{oid}\n".encode()
        + f"size {size}\n".encode()
    )


def manifest_json(entries: list[tuple[str, int, str]]) -> str:
    """Render (oid, size, path) tuples as `git lfs ls-files --json` output."""
    return json.dumps(
        {
            "files": [
                {"name": path, "size": size, "oid": oid, "oid_type": "sha256"}
                for oid, size, path in entries
            ]
        }
    )


@pytest.fixture
def git_mock(mocker: Any) -> Callable:
    """Mock git subprocess calls.

    Returns a callable that can be configured to return specific exit codes
    and outputs for different git subcommands.

    Usage:
        def test_something(git_mock):
            mock = git_mock({
                'clone': (0, '', ''),
                'fsck': (1, '', 'error: corrupt object'),
                'lfs': (0, manifest_json([...]), ''),
            })

    Advanced usage with handler:
        def test_something(git_mock):
            def handler(cmd):
                return (0, '', '')
            mock = git_mock({'_handler': handler})
    """

    def _create_mock(responses: dict[str, Any] | None = None) -> dict:
        """Configure mock responses for git subcommands.

        Args:
            responses: Dict mapping subcommand names to (returncode, stdout, stderr)
                      tuples, or callables taking the cmd list and returning one.
                      A '_handler' key handles every command.
                      Default returns (0, '', '') for any command.

        Returns:
            Dict tracking all calls made to the mock.
        """
        call_log: list[list[str]] = []
        env_log: list[dict] = []
        responses = responses or {}
        handler = responses.get("_handler")

        def mock_run(*args: Any, **kwargs: Any) -> Any:
            cmd = list(args[0] if args else kwargs.get("args", []))
            call_log.append(cmd)
            env_log.append(kwargs.get("env") or {})

            # 'git -C path fsck' -> 'fsck', 'git clone url dest' -> 'clone'
            rest = cmd[3:] if len(cmd) > 2 and cmd[1] == "-C" else cmd[1:]
            subcommand = rest[0] if rest else "unknown"

            if handler:
                result = handler(cmd)
            elif subcommand in responses:
                result = responses[subcommand]
                if callable(result):
                    result = result(cmd)
            else:
                result = (0, "", "")
            returncode, stdout, stderr = result

            class MockResult:
                def __init__(self, rc: int, out: str, err: str) -> None:
                    self.returncode = rc
                    self.stdout = out
                    self.stderr = err

            return MockResult(returncode, stdout, stderr)

        mocker.patch("hfmirror.subprocess.run", side_effect=mock_run)

        return {"calls": call_log, "envs": env_log, "responses": responses}

    return _create_mock


@pytest.fixture
def settings() -> hfmirror.SyncSettings:
    """Fast settings: few retries and no waiting."""
    return hfmirror.SyncSettings(
        fetch_retries=3,
        fetch_retry_delay=0,
        acquire_retries=2,
        acquire_retry_delay=0,
    )


@pytest.fixture
def work_tree(tmp_path: Path) -> Path:
    """Create a directory that looks like a cloned working tree.

    Creates:
        <tmp_path>/owner_model/
            .git/
    """
    root = tmp_path / "owner_model"
    (root / ".git").mkdir(parents=True)
    return root


@pytest.fixture
def ctx(work_tree: Path, settings: hfmirror.SyncSettings) -> hfmirror.RepositoryContext:
    return hfmirror.RepositoryContext(
        repo_id="owner/model",
        branch="main",
        destination=work_tree,
        settings=settings,
    )


@pytest.fixture(autouse=True)
def isolate_environment(tmp_path: Path, monkeypatch: Any) -> None:
    """Keep tests away from the real home, config and token."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.setenv("HFMIRROR_USER_CONFIG", str(tmp_path / "user-config"))
    monkeypatch.delenv("HFMIRROR_CONFIG", raising=False)
    monkeypatch.delenv("HF_TOKEN", raising=False)
    monkeypatch.setenv("NO_COLOR", "1")


@pytest.fixture(autouse=True)
def block_real_subprocess(monkeypatch: Any) -> None:
    """Block real git calls to prevent network access in tests.

    Tests that need git must use the git_mock fixture which overrides this
    with a proper mock.
    """
    original_run = subprocess.run

    def guarded_run(*args: Any, **kwargs: Any) -> Any:
        cmd = args[0] if args else kwargs.get("args", [])
        if cmd and str(cmd[0]).lower() == "git":

            class FakeResult:
                returncode = 0
                stdout = ""
                stderr = ""

            return FakeResult()
        return original_run(*args, **kwargs)

    monkeypatch.setattr("hfmirror.subprocess.run", guarded_run)
