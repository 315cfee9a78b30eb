"""
hfmirror - Selective LFS Repository Mirror CLI

Copyright 2026 UAA Software

Permission is hereby granted, free of charge, to any person obtaining a copy of
this software and associated documentation files (the “Software”), to deal in
the Software without restriction, including without limitation the rights to
use, copy, modify, merge, publish, distribute, sublicense, and/or sell copies of
the Software, and to permit persons to whom the Software is furnished to do so,
subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS
FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR
COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER
IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE SOFTWARE.
"""

import argparse
import base64
import fnmatch
import hashlib
import http.client
import json
import logging
import os
import re
import shlex
import shutil
import signal
import stat
import subprocess
import sys
import tempfile
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from filelock import FileLock as _FileLock
from filelock import Timeout as LockTimeout


# Module-level logger
logger = logging.getLogger("hfmirror")


LFS_SIGNATURE = "version https://git-lfs.github.com/spec/"
SIGNATURE_LENGTH = 40

DEFAULT_HOST = "huggingface.co"
DEFAULT_BRANCH = "main"
DEFAULT_BASE_PATH = "~/storage/gpu-models"
DEFAULT_EXCLUDED_PATTERNS = ["*ggml*", "*gguf*"]

GIT_DIR_NAME = ".git"
LOCK_FILE_NAME = ".hfmirror.lock"


# =============================================================================
# Exceptions
# =============================================================================


class GitError(Exception):
    """Error from git subprocess."""

    def __init__(self, message: str, returncode: int, stdout: str, stderr: str):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class ConfigError(Exception):
    """Error in configuration."""


class FetchError(Exception):
    """Download of a remote file failed."""

    def __init__(self, message: str, url: str, attempts: int):
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class AccessError(Exception):
    """Repository is private and no token was provided."""


class RepositoryStateError(Exception):
    """Local replica is in a state the sync cannot continue from."""


class ExcludedContentError(Exception):
    """Repository contains files of an excluded format."""

    def __init__(self, message: str, matches: list[str]):
        super().__init__(message)
        self.matches = matches


class NotATrackedRepository(Exception):
    """Path is not a git working tree."""


# =============================================================================
# Output Helpers
# =============================================================================


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    GRAY = "\033[90m"


def use_color() -> bool:
    """Check if color output should be used.

    Colors are disabled if:
    - NO_COLOR environment variable is set
    - CI environment variable is set
    - stdout is not a TTY

    Returns:
        True if color should be used
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("CI"):
        return False
    if not sys.stdout.isatty():
        return False
    return True


def colorize(text: str, color: str, force: bool = False) -> str:
    """Wrap text in ANSI color codes if appropriate.

    Args:
        text: Text to colorize
        color: Color name (e.g., 'RED', 'GREEN')
        force: Force color even if normally disabled

    Returns:
        Colorized text or plain text
    """
    if not force and not use_color():
        return text
    color_code = getattr(Colors, color.upper(), "")
    if color_code:
        return f"{color_code}{text}{Colors.RESET}"
    return text


def format_bytes(size: int) -> str:
    """Format byte size as human-readable string."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024:
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}PB"


def display_path(path: Path) -> str:
    """Shorten a path under the home directory to ~/..."""
    text = str(path)
    home = str(Path.home())
    if home and home != os.sep and text.startswith(home + os.sep):
        return "~" + text[len(home) :]
    return text


def die(message: str, hint: str | None = None, exit_code: int = 1) -> int:
    """Print error message and exit with optional hint.

    Args:
        message: Error message to display
        hint: Optional remediation hint
        exit_code: Exit code to return

    Returns:
        Exit code (for testing purposes)
    """
    error_msg = f"Error: {message}"
    if use_color():
        error_msg = f"{Colors.RED}{error_msg}{Colors.RESET}"
    print(error_msg, file=sys.stderr)

    if hint:
        hint_msg = f"Hint: {hint}"
        if use_color():
            hint_msg = f"{Colors.YELLOW}{hint_msg}{Colors.RESET}"
        print(hint_msg, file=sys.stderr)

    logger.error(f"Exited with code {exit_code}: {message}")
    if hint:
        logger.error(f"Hint: {hint}")

    return exit_code


# =============================================================================
# Logging
# =============================================================================


def setup_logging(verbosity: int = 0, log_file: bool = True) -> None:
    """Set up logging with console and file handlers.

    Args:
        verbosity: 0=INFO, 1=DEBUG, 2=TRACE (mapped to DEBUG with more detail)
        log_file: Whether to write to log file
    """
    if verbosity >= 2:
        level = logging.DEBUG
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    elif verbosity >= 1:
        level = logging.DEBUG
        fmt = "%(asctime)s - %(levelname)s - %(message)s"
    else:
        level = logging.INFO
        fmt = "%(asctime)s - %(levelname)s - %(message)s"

    # Clear existing handlers
    logger.handlers = []
    logger.setLevel(level)

    # Console handler (only warnings and above for non-verbose)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING if verbosity == 0 else level)
    console_handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(console_handler)

    if log_file:
        log_dir = Path.home() / ".hfmirror"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / "hfmirror.log"

        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setLevel(logging.DEBUG)  # Always log DEBUG to file
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(file_handler)

        logger.debug(f"Logging initialized (verbosity={verbosity})")


# =============================================================================
# Data Model
# =============================================================================


class StubState(Enum):
    MATERIALIZED = "materialized"
    UNRESOLVED_STUB = "unresolved_stub"
    EMPTY = "empty"


class EntryKind(Enum):
    DIRECTORY = "directory"
    FILE = "file"


@dataclass(frozen=True)
class TreeEntry:
    """A file or directory inside a working tree."""

    rel_path: str
    path: Path
    kind: EntryKind


@dataclass(frozen=True)
class LFSPointer:
    """Parsed LFS pointer file."""

    oid: str
    size: int


@dataclass(frozen=True)
class ManifestEntry:
    """Expected content of one LFS-tracked file at the checked-out revision."""

    oid: str
    size: int
    rel_path: str


@dataclass(frozen=True)
class MismatchRecord:
    rel_path: str
    expected: str
    actual: str  # "absent" when the file is missing


@dataclass
class SyncSettings:
    """Tunables for one sync run."""

    host: str = DEFAULT_HOST
    fetch_retries: int = 50
    fetch_retry_delay: float = 10.0
    timeout: float = 60.0
    resume_threshold: int = 1024
    acquire_retries: int = 5
    acquire_retry_delay: float = 5.0
    probe_timeout: float = 10.0
    excluded_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_PATTERNS)
    )
    assume_yes: bool = False


@dataclass
class TransferTask:
    entry: TreeEntry
    url: str
    offset: int
    credential: "Credential | None" = None


@dataclass
class RepositoryContext:
    """Everything one repository sync needs, passed explicitly between steps."""

    repo_id: str
    branch: str
    destination: Path
    credential: "Credential | None" = None
    settings: SyncSettings = field(default_factory=SyncSettings)
    fetched: list[str] = field(default_factory=list)
    mismatches: list[MismatchRecord] = field(default_factory=list)
    failure: str | None = None

    @property
    def repo_url(self) -> str:
        return repository_url(self.settings.host, self.repo_id)

    @property
    def ok(self) -> bool:
        return self.failure is None and not self.mismatches


# =============================================================================
# Low-level Utilities
# =============================================================================


def with_file_lock(path: Path, timeout: float = 10.0):
    """Context manager for cross-platform file locking.

    Uses the filelock package for robust locking with timeout support.

    Args:
        path: Path to lock file
        timeout: Seconds to wait for lock (0 to fail immediately, -1 for infinite)

    Returns:
        Context manager that acquires/releases lock
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    return _FileLock(path, timeout=timeout)


def hash_file(path: Path) -> str:
    """Compute the lowercase hex SHA256 of a file."""
    sha256 = hashlib.sha256()

    with path.open("rb") as f:
        while True:
            chunk = f.read(65536)  # 64KB chunks
            if not chunk:
                break
            sha256.update(chunk)

    return sha256.hexdigest().lower()


def repo_dir_name(repo_id: str) -> str:
    """Local directory name for a repository id (owner/name -> owner_name)."""
    return repo_id.replace("/", "_")


def validate_repo_id(repo_id: str) -> str:
    """Check that a repository id looks like owner/name."""
    parts = repo_id.strip().strip("/").split("/")
    if len(parts) != 2 or not all(parts) or any(p in (".", "..") for p in parts):
        raise ConfigError(f"Invalid repository id '{repo_id}', expected owner/name")
    return "/".join(parts)


# =============================================================================
# Credentials
# =============================================================================


class Credential:
    """Bearer token shared by git (through an askpass script) and HTTP.

    The askpass script only exists between acquire() and release(); use the
    instance as a context manager so it is removed on every exit path.
    """

    def __init__(self, token: str):
        if not token:
            raise ConfigError("Empty token")
        self.token = token
        self.askpass_path: Path | None = None

    def acquire(self) -> "Credential":
        if self.askpass_path is not None:
            return self
        fd, temp_path = tempfile.mkstemp(prefix="hfmirror-askpass-", suffix=".sh")
        try:
            with os.fdopen(fd, "w") as f:
                f.write("#!/bin/sh\n")
                f.write(f"echo {shlex.quote(self.token)}\n")
            os.chmod(temp_path, stat.S_IRWXU)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        self.askpass_path = Path(temp_path)
        logger.debug(f"Created askpass helper {temp_path}")
        return self

    def release(self) -> None:
        if self.askpass_path is None:
            return
        try:
            self.askpass_path.unlink()
            logger.debug(f"Removed askpass helper {self.askpass_path}")
        except FileNotFoundError:
            pass
        self.askpass_path = None

    def git_env(self) -> dict[str, str]:
        if self.askpass_path is None:
            return {}
        return {"GIT_ASKPASS": str(self.askpass_path)}

    def http_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def __enter__(self) -> "Credential":
        return self.acquire()

    def __exit__(self, *exc_info) -> None:
        self.release()

    def __repr__(self) -> str:
        return "Credential(token=***)"


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt(f"signal {signum}")


def install_signal_handlers() -> None:
    """Turn SIGTERM/SIGQUIT into KeyboardInterrupt so cleanup scopes unwind."""
    for name in ("SIGTERM", "SIGQUIT"):
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, _raise_interrupt)


# =============================================================================
# Configuration
# =============================================================================


def get_user_config_dir() -> Path:
    """Return ~/.config/hfmirror/, creating if needed."""
    env_override = os.environ.get("HFMIRROR_USER_CONFIG")
    if env_override:
        config_dir = Path(env_override)
    elif os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
        config_dir = base / "hfmirror"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
        config_dir = base / "hfmirror"

    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    """Resolve the user config file, honoring HFMIRROR_CONFIG."""
    config_path = os.environ.get("HFMIRROR_CONFIG")
    if config_path:
        return Path(config_path)
    return get_user_config_dir() / "config.toml"


def load_config(config_file: Path) -> dict[str, Any]:
    """Load configuration from TOML file."""
    if not config_file.exists():
        return {}

    try:
        import tomllib
    except ImportError:
        import tomli as tomllib

    try:
        with config_file.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid config file {config_file}: {e}") from e


def deep_merge(target: dict, source: dict) -> dict:
    """Deep merge two dictionaries."""
    result = target.copy()
    for key, value in source.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_merged_config(extra_config: Path | None = None) -> dict[str, Any]:
    """Load user config, then overlay an explicit --config file."""
    config = load_config(get_config_path())
    if extra_config is not None:
        if not extra_config.exists():
            raise ConfigError(f"Config file not found: {extra_config}")
        config = deep_merge(config, load_config(extra_config))
    return config


def warn_if_token_exposed(config_file: Path) -> None:
    """Warn if a config file holding a token is readable by others."""
    if os.name == "nt" or not config_file.exists():
        return
    content = config_file.read_text()
    if "token" not in content:
        return
    mode = config_file.stat().st_mode
    if mode & (stat.S_IRGRP | stat.S_IROTH):
        print(
            colorize(f"Warning: {config_file} holds a token and is readable by others", "YELLOW"),
            file=sys.stderr,
        )
        print(f"Restrict it with: chmod 600 {config_file}", file=sys.stderr)


def _number(value: Any, name: str, kind: type, minimum: float) -> Any:
    try:
        result = kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{name}' must be a number, got {value!r}")
    if result < minimum:
        raise ConfigError(f"'{name}' must be >= {minimum}, got {value!r}")
    return result


def settings_from_config(config: dict[str, Any]) -> SyncSettings:
    """Build SyncSettings from a merged config dict."""
    defaults = config.get("defaults", {})
    download = config.get("download", {})
    repository = config.get("repository", {})
    exclude = config.get("exclude", {})

    settings = SyncSettings()
    settings.host = defaults.get("host", settings.host)
    settings.fetch_retries = _number(
        download.get("retries", settings.fetch_retries), "download.retries", int, 1
    )
    settings.fetch_retry_delay = _number(
        download.get("retry_delay", settings.fetch_retry_delay),
        "download.retry_delay",
        float,
        0,
    )
    settings.timeout = _number(
        download.get("timeout", settings.timeout), "download.timeout", float, 1
    )
    settings.resume_threshold = _number(
        download.get("resume_threshold", settings.resume_threshold),
        "download.resume_threshold",
        int,
        1,
    )
    settings.acquire_retries = _number(
        repository.get("acquire_retries", settings.acquire_retries),
        "repository.acquire_retries",
        int,
        1,
    )
    settings.acquire_retry_delay = _number(
        repository.get("acquire_retry_delay", settings.acquire_retry_delay),
        "repository.acquire_retry_delay",
        float,
        0,
    )
    settings.probe_timeout = _number(
        repository.get("probe_timeout", settings.probe_timeout),
        "repository.probe_timeout",
        float,
        1,
    )

    patterns = exclude.get("patterns", settings.excluded_patterns)
    if not isinstance(patterns, list):
        raise ConfigError("'exclude.patterns' must be a list of glob patterns")
    settings.excluded_patterns = [str(p) for p in patterns]
    return settings


def resolve_token(cli_token: str | None, config: dict[str, Any]) -> str | None:
    """Pick the token: CLI flag, then HF_TOKEN, then [auth] token."""
    if cli_token:
        return cli_token
    env_token = os.environ.get("HF_TOKEN")
    if env_token:
        return env_token
    return config.get("auth", {}).get("token") or None


# =============================================================================
# Git
# =============================================================================


def run_git(
    args: list[str],
    *,
    cwd: Path | str | None = None,
    credential: Credential | None = None,
    timeout: float | None = None,
) -> tuple[int, str, str]:
    """Run git subprocess and return (returncode, stdout, stderr).

    Smudging is always disabled so that clone/pull/checkout leave LFS files
    as pointer stubs; their content is fetched over HTTP afterwards.

    Raises:
        GitError: If returncode is non-zero or git is missing
    """
    cmd = ["git"]
    if cwd is not None:
        cmd += ["-C", str(cwd)]
    cmd += args

    run_env = os.environ.copy()
    run_env["GIT_LFS_SKIP_SMUDGE"] = "1"
    run_env["GIT_TERMINAL_PROMPT"] = "0"
    if credential is not None:
        run_env.update(credential.git_env())

    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, env=run_env, timeout=timeout
        )
    except FileNotFoundError as exc:
        raise GitError(
            "git not found in PATH. Install from https://git-scm.com/downloads",
            127,
            "",
            str(exc),
        )

    if result.returncode != 0:
        raise GitError(
            f"git {args[0]} failed with code {result.returncode}: {result.stderr.strip()}",
            result.returncode,
            result.stdout,
            result.stderr,
        )

    return result.returncode, result.stdout, result.stderr


def git_clone(url: str, destination: Path, credential: Credential | None = None) -> None:
    run_git(["clone", url, str(destination)], credential=credential)


def git_pull(path: Path, credential: Credential | None = None) -> None:
    run_git(["pull"], cwd=path, credential=credential)


def git_checkout(path: Path, branch: str, credential: Credential | None = None) -> None:
    run_git(["checkout", branch], cwd=path, credential=credential)


def git_fsck(path: Path) -> bool:
    """Return True if the object store passes git fsck."""
    try:
        run_git(["fsck"], cwd=path)
    except GitError as e:
        logger.warning(f"git fsck failed in {path}: {e.stderr.strip()}")
        return False
    return True


def git_list_deleted(path: Path) -> list[str]:
    _, stdout, _ = run_git(["ls-files", "--deleted"], cwd=path)
    return [line for line in stdout.splitlines() if line]


def git_restore(path: Path, rel_path: str) -> None:
    run_git(["restore", "--", rel_path], cwd=path)


# =============================================================================
# Manifest
# =============================================================================


def parse_manifest(text: str) -> list[ManifestEntry]:
    """Parse `git lfs ls-files --long --json` output."""
    try:
        data = json.loads(text) if text.strip() else {}
    except json.JSONDecodeError as e:
        raise GitError(f"Unreadable git lfs ls-files output: {e}", 1, text, "")

    entries = []
    for item in data.get("files") or []:
        entries.append(
            ManifestEntry(
                oid=str(item["oid"]).lower(),
                size=int(item.get("size", 0)),
                rel_path=item["name"],
            )
        )
    return entries


def read_manifest(path: Path) -> list[ManifestEntry]:
    """List the LFS-tracked files of the checked-out revision.

    Must be called after clone/pull/checkout, the manifest follows HEAD.

    Raises:
        NotATrackedRepository: If path is not a git working tree
    """
    if not (path / GIT_DIR_NAME).is_dir():
        raise NotATrackedRepository(f"No git repository found at '{path}'")

    try:
        _, stdout, _ = run_git(["lfs", "ls-files", "--long", "--json"], cwd=path)
    except GitError as e:
        if "not a git repository" in e.stderr.lower():
            raise NotATrackedRepository(f"No git repository found at '{path}'") from e
        raise

    return parse_manifest(stdout)


# =============================================================================
# Stub Classification & Tree Walk
# =============================================================================


_SIGNATURE_B64 = base64.b64encode(
    LFS_SIGNATURE.encode("ascii")[:SIGNATURE_LENGTH].ljust(SIGNATURE_LENGTH, b"\0")
)
_OID_PATTERN = re.compile(r"^oid sha256:([0-9a-f]{64})$")


def classify_file(path: Path, size: int | None = None) -> StubState:
    """Decide whether a file still needs its LFS content fetched.

    Empty files and files starting with the LFS pointer signature both need
    a fetch; anything else is treated as already materialized.
    """
    if size is None:
        size = path.stat().st_size
    if size == 0:
        return StubState.EMPTY

    with path.open("rb") as f:
        header = f.read(SIGNATURE_LENGTH)

    if base64.b64encode(header) == _SIGNATURE_B64:
        return StubState.UNRESOLVED_STUB
    return StubState.MATERIALIZED


def parse_pointer(path: Path) -> LFSPointer | None:
    """Parse an LFS pointer file, or None if it is not a valid pointer."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None

    lines = text.strip().splitlines()
    if len(lines) < 3 or not lines[0].startswith(LFS_SIGNATURE):
        return None

    oid = None
    size = None
    for line in lines[1:]:
        match = _OID_PATTERN.match(line.strip())
        if match:
            oid = match.group(1)
        elif line.startswith("size "):
            try:
                size = int(line[len("size ") :])
            except ValueError:
                return None

    if oid is None or size is None or size < 0:
        return None
    return LFSPointer(oid=oid, size=size)


def walk_tree(root: Path, rel: str = "") -> Iterator[TreeEntry]:
    """Yield every entry under root depth-first, skipping .git at any depth."""
    directory = root / rel if rel else root
    with os.scandir(directory) as it:
        children = sorted(it, key=lambda e: e.name)

    for child in children:
        if child.name == GIT_DIR_NAME:
            continue
        child_rel = f"{rel}/{child.name}" if rel else child.name
        if child.is_dir(follow_symlinks=False):
            yield TreeEntry(child_rel, Path(child.path), EntryKind.DIRECTORY)
            yield from walk_tree(root, child_rel)
        elif child.is_symlink() and child.is_dir():
            logger.debug(f"Skipping symlinked directory {child_rel}")
        else:
            yield TreeEntry(child_rel, Path(child.path), EntryKind.FILE)


def find_pending_transfers(
    ctx: RepositoryContext, entries: Iterable[TreeEntry]
) -> Iterator[TransferTask]:
    """Yield a transfer task for every stub or empty file in entries."""
    for entry in entries:
        if entry.kind is not EntryKind.FILE:
            continue
        size = entry.path.stat().st_size
        state = classify_file(entry.path, size)
        logger.debug(f"{entry.rel_path}: {state.value}")
        if state is StubState.MATERIALIZED:
            continue
        yield make_transfer_task(ctx, entry, size)


# =============================================================================
# HTTP
# =============================================================================


def repository_url(host: str, repo_id: str) -> str:
    return f"https://{host}/{repo_id}"


def resolve_url(host: str, repo_id: str, branch: str, rel_path: str) -> str:
    """Raw content URL of a file at a branch."""
    quoted_branch = urllib.parse.quote(branch, safe="/")
    quoted_path = urllib.parse.quote(rel_path, safe="/")
    return f"{repository_url(host, repo_id)}/resolve/{quoted_branch}/{quoted_path}"


def _is_transient_status(code: int) -> bool:
    return code in (408, 429) or code >= 500


def probe_visibility(url: str, timeout: float = 10.0) -> bool:
    """Return True if url is reachable anonymously, False if access is denied.

    Network errors and server errors propagate as URLError so the caller can
    retry them.
    """
    request = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as resp:
            logger.debug(f"Probe {url}: HTTP {resp.status}")
            return True
    except urllib.error.HTTPError as e:
        logger.debug(f"Probe {url}: HTTP {e.code}")
        if e.code in (401, 403, 404):
            return False
        raise


def _fetch_once(
    url: str, dest: Path, offset: int, headers: dict[str, str], timeout: float
) -> int:
    request = urllib.request.Request(url, headers=dict(headers))
    if offset > 0:
        request.add_header("Range", f"bytes={offset}-")

    with urllib.request.urlopen(request, timeout=timeout) as resp:
        status = resp.status
        if offset > 0 and status == 206:
            mode = "ab"
        else:
            if offset > 0:
                logger.debug(f"Server ignored range for {url}, restarting")
            mode = "wb"
        expected = resp.headers.get("Content-Length")
        received = 0
        with dest.open(mode) as f:
            while chunk := resp.read(65536):
                f.write(chunk)
                received += len(chunk)

    # http.client returns b"" when the peer closes early
    if expected is not None and received < int(expected):
        raise http.client.IncompleteRead(b"", int(expected) - received)

    return dest.stat().st_size


def fetch_url(
    url: str,
    dest: Path,
    *,
    offset: int = 0,
    headers: dict[str, str] | None = None,
    retries: int = 50,
    retry_delay: float = 10.0,
    timeout: float = 60.0,
) -> int:
    """Download url into dest, resuming from offset when it is non-zero.

    With offset 0 dest is truncated first. Every retry continues from the
    bytes already written. Returns the final size of dest.

    Raises:
        FetchError: On a non-retryable HTTP error or when retries run out
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    if offset == 0:
        dest.write_bytes(b"")

    headers = headers or {}
    last_error: Exception | None = None
    attempt = 0

    while attempt < retries:
        attempt += 1
        logger.debug(f"GET {url} (attempt {attempt}/{retries}, offset {offset})")
        try:
            return _fetch_once(url, dest, offset, headers, timeout)
        except urllib.error.HTTPError as e:
            if e.code == 416 and offset > 0:
                logger.debug(f"Range not satisfiable for {url}, file already complete")
                return dest.stat().st_size
            if not _is_transient_status(e.code):
                raise FetchError(
                    f"HTTP {e.code} for {url}", url, attempt
                ) from e
            last_error = e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            last_error = e

        logger.warning(f"Download attempt {attempt} for {url} failed: {last_error}")
        # Everything in dest now came from this transfer
        offset = dest.stat().st_size if dest.exists() else 0
        if attempt < retries:
            time.sleep(retry_delay)

    raise FetchError(
        f"Failed to download {url} after {attempt} attempts: {last_error}",
        url,
        attempt,
    )


# =============================================================================
# Transfers
# =============================================================================


def make_transfer_task(
    ctx: RepositoryContext, entry: TreeEntry, size: int | None = None
) -> TransferTask:
    """Build the transfer for a stub or empty file.

    Files below the resume threshold are pointer bodies and restart from
    zero; larger ones are partial downloads and resume at their size.
    """
    if size is None:
        size = entry.path.stat().st_size
    offset = size if size >= ctx.settings.resume_threshold else 0
    url = resolve_url(ctx.settings.host, ctx.repo_id, ctx.branch, entry.rel_path)
    return TransferTask(entry=entry, url=url, offset=offset, credential=ctx.credential)


def process_task(ctx: RepositoryContext, task: TransferTask) -> int:
    """Fetch one task into place and record it. Returns the final size."""
    shown = display_path(task.entry.path)
    if task.offset == 0:
        pointer = parse_pointer(task.entry.path)
        remote_size = format_bytes(pointer.size) if pointer else "Unknown size"
        if pointer:
            logger.debug(f"{task.entry.rel_path}: expecting sha256 {pointer.oid}")
        print(f"-- Downloading LFS file: {shown} ({remote_size})")
    else:
        print(f"-- Continue downloading LFS file: {shown}")

    headers = task.credential.http_headers() if task.credential else {}
    settings = ctx.settings
    final_size = fetch_url(
        task.url,
        task.entry.path,
        offset=task.offset,
        headers=headers,
        retries=settings.fetch_retries,
        retry_delay=settings.fetch_retry_delay,
        timeout=settings.timeout,
    )
    logger.info(f"Downloaded {task.entry.rel_path} ({format_bytes(final_size)})")
    ctx.fetched.append(task.entry.rel_path)
    return final_size


def download_pending(ctx: RepositoryContext) -> int:
    """Walk the working tree and fetch every stub as it is found.

    Returns the number of files fetched.
    """
    count = 0
    for task in find_pending_transfers(ctx, walk_tree(ctx.destination)):
        if count == 0:
            print(colorize("\n-- Downloading all LFS files...", "CYAN"))
        process_task(ctx, task)
        count += 1
    return count


# =============================================================================
# Integrity
# =============================================================================


def verify_integrity(
    manifest: Iterable[ManifestEntry], root: Path
) -> list[MismatchRecord]:
    """Re-hash every manifest entry on disk. Empty result means verified."""
    mismatches = []
    for entry in manifest:
        file_path = root / entry.rel_path.replace("/", os.sep)
        if not file_path.is_file():
            logger.debug(f"Missing LFS file {entry.rel_path}")
            mismatches.append(MismatchRecord(entry.rel_path, entry.oid, "absent"))
            continue

        actual = hash_file(file_path)
        if actual != entry.oid.lower():
            logger.debug(f"Hash mismatch for {entry.rel_path}: {entry.oid} != {actual}")
            mismatches.append(MismatchRecord(entry.rel_path, entry.oid, actual))
    return mismatches


def report_mismatches(
    repo_id: str,
    manifest: list[ManifestEntry],
    mismatches: list[MismatchRecord],
    failure: str | None = None,
) -> None:
    """Print per-file integrity results and the corrupted file list."""
    failed = {m.rel_path: m for m in mismatches}
    for entry in manifest:
        record = failed.get(entry.rel_path)
        if record is None:
            print(f"-- Hash matches for {entry.rel_path}")
        elif record.actual == "absent":
            print(colorize(f"-- File not found: {entry.rel_path}", "YELLOW"))
        else:
            print(colorize(f"-- Hash mismatch for {entry.rel_path}", "RED"))
            print(colorize(f"-> {record.expected}", "CYAN"))
            print(colorize(f"-< {record.actual}", "CYAN"))

    if not mismatches:
        if failure is not None:
            print(colorize(f"-- {repo_id} is incomplete: {failure}", "RED"))
        else:
            print(colorize("-- Repository integrity verified", "GREEN"))
        return

    print(colorize(f"\n-- Hash mismatch detected inside of {repo_id}", "RED"))
    print(colorize("-- BEGIN list of corrupted files", "CYAN"))
    for record in sorted(mismatches, key=lambda m: m.rel_path):
        print(record.rel_path)
    print(colorize("-- END list of corrupted files", "CYAN"))


# =============================================================================
# Recovery
# =============================================================================


def force_delete(
    path: Path | str | None,
    *,
    assume_yes: bool = False,
    prompt: Callable[[str], str] | None = None,
) -> bool:
    """Delete a broken replica after confirmation. Returns True if deleted.

    Raises:
        RepositoryStateError: If path is empty or a filesystem root
    """
    if path is None or str(path).strip() in ("", "."):
        raise RepositoryStateError("Refusing to delete an empty path")
    resolved = Path(path).resolve()
    if resolved == Path(resolved.anchor):
        raise RepositoryStateError(f"Refusing to delete filesystem root {resolved}")

    if not resolved.exists():
        return False

    if not assume_yes:
        prompt = prompt or input
        question = colorize(f"-- About to force-delete {resolved}. Continue? (y/n) ", "RED")
        try:
            response = prompt(question).strip().lower()
        except EOFError:
            response = ""
        if response not in ("y", "yes"):
            logger.warning(f"Deletion of {resolved} declined, leaving it in place")
            return False

    logger.warning(f"Force-deleting {resolved}")
    shutil.rmtree(resolved)
    return True


# =============================================================================
# Repository Operations
# =============================================================================


def prepare_destination(ctx: RepositoryContext) -> None:
    """Ensure the destination is empty or an existing working tree."""
    destination = ctx.destination
    destination.mkdir(parents=True, exist_ok=True)
    if any(destination.iterdir()) and not (destination / GIT_DIR_NAME).is_dir():
        raise RepositoryStateError(
            f"Target directory {destination} is non empty and not a git repository"
        )


def acquire_repository(ctx: RepositoryContext) -> bool:
    """Clone or pull the repository, retrying transient failures.

    Returns True when the repository was freshly cloned.

    Raises:
        AccessError: If the repository is private and no token is set
        GitError: When retries are exhausted
    """
    settings = ctx.settings
    last_error: Exception | None = None

    for attempt in range(1, settings.acquire_retries + 1):
        try:
            if ctx.credential is None:
                probe = f"{ctx.repo_url}/tree/{urllib.parse.quote(ctx.branch, safe='/')}"
                if not probe_visibility(probe, timeout=settings.probe_timeout):
                    raise AccessError(
                        f"Repository {ctx.repo_id} is private and HF_TOKEN was not provided"
                    )

            if (ctx.destination / GIT_DIR_NAME).is_dir():
                print("-- Updating repository...")
                git_pull(ctx.destination, ctx.credential)
                return False

            print("-- Cloning repository...")
            git_clone(ctx.repo_url, ctx.destination, ctx.credential)
            return True
        except (GitError, urllib.error.URLError, OSError) as e:
            last_error = e
            logger.warning(f"Clone/update attempt {attempt} for {ctx.repo_id} failed: {e}")
            if attempt < settings.acquire_retries:
                print(
                    colorize(
                        f"-- Failed to clone/update git repo. Trying again in "
                        f"{settings.acquire_retry_delay:g} sec.",
                        "RED",
                    )
                )
                time.sleep(settings.acquire_retry_delay)

    raise GitError(
        f"Failed to clone/update {ctx.repo_id} after {settings.acquire_retries} attempts: {last_error}",
        getattr(last_error, "returncode", 1),
        "",
        str(last_error),
    )


def check_consistency(ctx: RepositoryContext) -> None:
    """Run git fsck and restore files deleted from the working tree.

    Raises:
        RepositoryStateError: If fsck fails (after offering to delete)
    """
    print(colorize("\n-- Checking SHA256 integrity for all non LFS files...", "CYAN"))
    if not git_fsck(ctx.destination):
        print(colorize("-- Repository integrity is incorrect.", "RED"))
        force_delete(ctx.destination, assume_yes=ctx.settings.assume_yes)
        raise RepositoryStateError(f"git fsck failed for {ctx.repo_id}")

    for rel_path in git_list_deleted(ctx.destination):
        logger.info(f"Restoring deleted file {rel_path}")
        git_restore(ctx.destination, rel_path)


def switch_branch(ctx: RepositoryContext) -> None:
    """Check out the requested branch on a fresh clone.

    Raises:
        RepositoryStateError: If the checkout fails (after offering to delete)
    """
    try:
        git_checkout(ctx.destination, ctx.branch, ctx.credential)
    except GitError as e:
        print(colorize(f"-- Failed to switch to branch '{ctx.branch}'.", "RED"))
        force_delete(ctx.destination, assume_yes=ctx.settings.assume_yes)
        raise RepositoryStateError(
            f"Failed to switch to branch '{ctx.branch}': {e}"
        ) from e
    print(colorize(f"-- Switched to branch '{ctx.branch}'...", "GREEN"))


def make_exclusion_predicate(patterns: list[str]) -> Callable[[str], bool]:
    """Case-insensitive glob predicate over entry names."""
    lowered = [p.lower() for p in patterns]

    def is_excluded(name: str) -> bool:
        name = name.lower()
        return any(fnmatch.fnmatch(name, p) for p in lowered)

    return is_excluded


def check_excluded_content(
    ctx: RepositoryContext, predicate: Callable[[str], bool] | None = None
) -> None:
    """Refuse repositories holding files of an excluded format.

    Raises:
        ExcludedContentError: If any entry name matches
    """
    if predicate is None:
        if not ctx.settings.excluded_patterns:
            return
        predicate = make_exclusion_predicate(ctx.settings.excluded_patterns)

    matches = [
        entry.rel_path
        for entry in walk_tree(ctx.destination)
        if predicate(entry.path.name)
    ]
    if matches:
        raise ExcludedContentError(
            f"Excluded content detected in {ctx.repo_id}: {', '.join(matches[:5])}",
            matches,
        )


def sync_repository(ctx: RepositoryContext) -> int:
    """Mirror one repository end to end. Returns 0 when verified."""
    print(colorize(f"\n-- Getting repository '{ctx.repo_id}'...", "BLUE"))
    logger.info(f"Syncing {ctx.repo_id}@{ctx.branch} into {ctx.destination}")

    try:
        prepare_destination(ctx)
        fresh = acquire_repository(ctx)
        check_consistency(ctx)
        if fresh:
            switch_branch(ctx)
        print(colorize("-- Non LFS files are ready.", "GREEN"))
        check_excluded_content(ctx)
    except (RepositoryStateError, AccessError, ExcludedContentError, GitError, OSError) as e:
        ctx.failure = str(e)
        return die(str(e))

    try:
        download_pending(ctx)
    except FetchError as e:
        ctx.failure = str(e)
        die(
            f"Failed to download the file {e.url}",
            hint="Make sure that you have an Internet connection and authorized access (HF_TOKEN?)",
        )
    except OSError as e:
        ctx.failure = str(e)
        die(f"Local I/O error while downloading: {e}")

    # Verification always runs, even after a failed download
    print(colorize("\n-- Checking SHA256 integrity for all LFS files", "CYAN"))
    try:
        manifest = read_manifest(ctx.destination)
        ctx.mismatches = verify_integrity(manifest, ctx.destination)
    except (NotATrackedRepository, GitError) as e:
        ctx.failure = ctx.failure or str(e)
        return die(str(e))
    except OSError as e:
        ctx.failure = ctx.failure or str(e)
        return die(f"Local I/O error while verifying: {e}")

    report_mismatches(ctx.repo_id, manifest, ctx.mismatches, failure=ctx.failure)
    return 0 if ctx.ok else 1


# =============================================================================
# Commands
# =============================================================================


def cmd_sync(
    repo_ids: list[str],
    branch: str,
    base_path: Path,
    token: str | None,
    settings: SyncSettings,
) -> int:
    """Execute sync command over every requested repository in order."""
    try:
        repo_ids = [validate_repo_id(r) for r in repo_ids]
    except ConfigError as e:
        return die(str(e))

    base_path.mkdir(parents=True, exist_ok=True)
    results: list[RepositoryContext] = []

    try:
        with with_file_lock(base_path / LOCK_FILE_NAME, timeout=0):
            credential = Credential(token) if token else None
            try:
                if credential is not None:
                    credential.acquire()
                for repo_id in repo_ids:
                    ctx = RepositoryContext(
                        repo_id=repo_id,
                        branch=branch,
                        destination=base_path / repo_dir_name(repo_id),
                        credential=credential,
                        settings=settings,
                    )
                    sync_repository(ctx)
                    results.append(ctx)
            finally:
                if credential is not None:
                    credential.release()
    except LockTimeout:
        return die(
            f"Another hfmirror run is already using {base_path}",
            hint="Wait for it to finish or use a different --base-path",
        )

    failed = [ctx for ctx in results if not ctx.ok]
    print()
    for ctx in results:
        status = colorize("OK", "GREEN") if ctx.ok else colorize("FAILED", "RED")
        print(f"{status} {ctx.repo_id} ({len(ctx.fetched)} files downloaded)")

    if failed:
        print(colorize("\nFailed.", "RED"))
        return 1
    print(colorize("\nSuccess.", "GREEN"))
    return 0


def cmd_verify(path: Path, json_output: bool = False) -> int:
    """Execute verify command against an existing replica."""
    path = path.resolve()
    try:
        manifest = read_manifest(path)
    except (NotATrackedRepository, GitError) as e:
        return die(str(e))

    mismatches = verify_integrity(manifest, path)

    if json_output:
        result = {
            "total": len(manifest),
            "corrupted": [
                {"path": m.rel_path, "expected": m.expected, "actual": m.actual}
                for m in mismatches
                if m.actual != "absent"
            ],
            "missing": [m.rel_path for m in mismatches if m.actual == "absent"],
            "issues": len(mismatches),
        }
        print(json.dumps(result, indent=2))
    else:
        report_mismatches(path.name, manifest, mismatches)

    return 1 if mismatches else 0


# =============================================================================
# CLI Entry Point
# =============================================================================


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="hfmirror",
        description="Mirror LFS-backed model repositories over HTTP",
        exit_on_error=False,
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use -v for DEBUG, -vv for TRACE)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Clone/update and download repositories")
    sync_parser.add_argument("repos", nargs="*", help="Repository ids (owner/name)")
    sync_parser.add_argument("--branch", "-b", help="Branch to mirror (default: main)")
    sync_parser.add_argument("--base-path", help="Directory holding the replicas")
    sync_parser.add_argument("--host", help="Repository host (default: huggingface.co)")
    sync_parser.add_argument("--token", help="Access token (default: $HF_TOKEN)")
    sync_parser.add_argument("--config", help="Extra TOML config file")
    sync_parser.add_argument("--retries", type=int, help="Download attempts per file")
    sync_parser.add_argument("--retry-delay", type=float, help="Seconds between attempts")
    sync_parser.add_argument(
        "--exclude", action="append", default=None, help="Reject repositories with matching files"
    )
    sync_parser.add_argument(
        "--no-exclude", action="store_true", help="Disable excluded format checks"
    )
    sync_parser.add_argument(
        "--yes", "-y", action="store_true", help="Skip deletion confirmation prompts"
    )

    # verify command
    verify_parser = subparsers.add_parser(
        "verify", help="Verify LFS files of a replica against its manifest"
    )
    verify_parser.add_argument("path", help="Path to the local replica")
    verify_parser.add_argument(
        "--json", action="store_true", help="Output in JSON format"
    )

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse calls sys.exit() on --help or errors
        return e.code if isinstance(e.code, int) else 1
    except Exception:
        return 1

    setup_logging(verbosity=args.verbose, log_file=True)

    if args.command is None:
        parser.print_help()
        return 0

    install_signal_handlers()

    try:
        if args.command == "verify":
            return cmd_verify(Path(args.path), json_output=args.json)

        try:
            config = load_merged_config(Path(args.config) if args.config else None)
            settings = settings_from_config(config)
        except ConfigError as e:
            return die(str(e))
        warn_if_token_exposed(get_config_path())

        defaults = config.get("defaults", {})
        if args.host:
            settings.host = args.host
        if args.retries is not None:
            if args.retries < 1:
                return die("--retries must be at least 1")
            settings.fetch_retries = args.retries
        if args.retry_delay is not None:
            settings.fetch_retry_delay = max(0.0, args.retry_delay)
        if args.exclude:
            settings.excluded_patterns = args.exclude
        if args.no_exclude:
            settings.excluded_patterns = []
        settings.assume_yes = args.yes

        repos = args.repos or list(defaults.get("repositories", []))
        if not repos:
            return die("No repository provided", hint="hfmirror sync owner/name")

        branch = args.branch or defaults.get("branch") or DEFAULT_BRANCH
        base_path = Path(args.base_path or defaults.get("base_path") or DEFAULT_BASE_PATH)
        base_path = base_path.expanduser()
        token = resolve_token(args.token, config)

        return cmd_sync(repos, branch, base_path, token, settings)
    except KeyboardInterrupt:
        print(colorize("\nInterrupted.", "RED"), file=sys.stderr)
        logger.warning("Interrupted by signal")
        return 130


if __name__ == "__main__":
    sys.exit(main())
