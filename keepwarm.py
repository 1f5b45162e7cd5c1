#!/usr/bin/env python3
"""
keepwarm.py — keeps a Claude Code usage window warm on a sleeping Mac.

launchd runs this every interval. Each run it:
1. Checks whether the current hour is a skip (blackout) hour
2. Boots the Claude CLI inside a headless tmux session
3. Confirms the folder trust dialog if it shows up
4. Runs /usage and scrapes the panel out of the scrollback
5. Pings Claude with "Hi" if no usage window is active
6. Arms the next hardware wake with pmset, stepping over skip hours

Step 6 runs no matter what happened before it. Each run arms the next
wake, so one failed run must not break the chain.

MIT License
"""

__version__ = "1.0.0"

import getpass
import itertools
import logging
import os
import plistlib
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import time
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import NamedTuple, Optional

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent
INTERVAL_FILE = BASE_DIR / ".interval"
SKIP_HOURS_FILE = BASE_DIR / ".skip_hours"
DEFAULT_LOG_FILE = BASE_DIR / "keepwarm.log"

DEFAULT_INTERVAL = 60  # minutes
DEFAULT_SKIP_HOURS = frozenset({3, 4, 5})

DEFAULT_CLAUDE_BIN = Path.home() / ".local" / "bin" / "claude"

# launchd gives us a minimal PATH that excludes Homebrew
EXTRA_PATHS = ["/opt/homebrew/bin", "/usr/local/bin"]

# Variables Claude uses to refuse running inside another Claude session
NESTED_GUARD_VARS = ("CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT")

# Terminal geometry. Ink needs the width to lay out the /usage panel.
TERM_WIDTH = 200
TERM_HEIGHT = 50
TMUX_TIMEOUT = 10  # seconds per tmux command

# Timeouts (seconds). Override via KEEPWARM_<NAME> in the environment or .env
BOOT_TIMEOUT = 15
CONFIRM_HINT_TIMEOUT = 5
TRUST_TIMEOUT = 10
STATUS_TIMEOUT = 20
PING_GRACE = 30

POLL_INTERVAL = 0.5
SETTLE_DELAY = 0.5

STATUS_COMMAND = "/usage"
PING_MESSAGE = "Hi"

# Wake scheduling
MAX_SEARCH_MINUTES = 24 * 60
PMSET = "/usr/bin/pmset"
WAKE_FORMAT = "%m/%d/%Y %H:%M:%S"
ARM_TIMEOUT = 30

# Installation
PLIST_NAME = "com.user.keepwarm"
LAUNCH_AGENTS_DIR = Path.home() / "Library" / "LaunchAgents"
SUDOERS_FILE = Path("/etc/sudoers.d/keepwarm")

log = logging.getLogger("keepwarm")


def setup_logging(log_file: Optional[Path] = None) -> bool:
    """
    Append to the flat run log and echo to stderr. The log is never truncated.

    An unwritable log file must not stop the run from arming the next wake,
    so it degrades to stderr only. Returns True if the file handler is active.
    """
    log_file = Path(log_file or os.getenv("KEEPWARM_LOG_FILE", DEFAULT_LOG_FILE))
    handlers = [logging.StreamHandler()]
    file_error = None
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file, mode="a", encoding="utf-8"))
    except OSError as e:
        file_error = e
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )
    if file_error:
        log.warning(f"Cannot open log file {log_file}: {file_error}. Logging to stderr only.")
        return False
    return True


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class SyncError(Exception):
    """Aborts the interactive part of a run. Scheduling still happens."""


class ConfigError(SyncError):
    pass


class BinaryMissing(SyncError):
    pass


class CapabilityMissing(SyncError):
    pass


class TerminalError(SyncError):
    pass


class BootTimeout(SyncError):
    pass


class TrustTimeout(SyncError):
    pass


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------


class RunConfig(NamedTuple):
    interval_minutes: int
    skip_hours: frozenset


def load_env():
    """Load .env file if it exists. Does not override existing env vars."""
    env_file = BASE_DIR / ".env"
    if env_file.exists():
        for line in env_file.read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, _, value = line.partition("=")
                os.environ.setdefault(key.strip(), value.strip())


def _env_seconds(name: str, default: float) -> float:
    raw = os.getenv(f"KEEPWARM_{name}")
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning(f"KEEPWARM_{name}={raw!r} is not a number, using {default}")
        return default


def parse_skip_hours(text: str, strict: bool = False) -> frozenset:
    """
    Parse "3,4,5" into {3, 4, 5}.

    Tokens that are not hours 0-23 are dropped with a warning, or raise
    ConfigError when ``strict`` (used by --install, where a typo should stop
    the user rather than be silently ignored).
    """
    hours = set()
    for token in text.split(","):
        token = token.strip()
        if not token:
            continue
        try:
            hour = int(token)
        except ValueError:
            hour = -1
        if 0 <= hour <= 23:
            hours.add(hour)
        elif strict:
            raise ConfigError(f"Invalid skip hour {token!r} (expected 0-23)")
        else:
            log.warning(f"Ignoring invalid skip hour {token!r}")
    return frozenset(hours)


def load_interval() -> int:
    """Wake interval in minutes. Falls back to the default when missing or bad."""
    if not INTERVAL_FILE.exists():
        log.info(f"No {INTERVAL_FILE.name} file, using {DEFAULT_INTERVAL} minutes")
        return DEFAULT_INTERVAL
    raw = INTERVAL_FILE.read_text().strip()
    try:
        val = int(raw)
    except ValueError:
        val = 0
    if val < 1:
        log.warning(f"Invalid interval {raw!r} in {INTERVAL_FILE.name}, using {DEFAULT_INTERVAL}")
        return DEFAULT_INTERVAL
    return val


def load_skip_hours() -> frozenset:
    """
    Skip hours from .skip_hours. A missing file means the default blackout,
    never "no blackout". An empty file is an explicit "no skip hours".
    """
    if not SKIP_HOURS_FILE.exists():
        default = ",".join(str(h) for h in sorted(DEFAULT_SKIP_HOURS))
        log.warning(f"No {SKIP_HOURS_FILE.name} file, using default skip hours {default}")
        return DEFAULT_SKIP_HOURS
    return parse_skip_hours(SKIP_HOURS_FILE.read_text())


def load_config() -> RunConfig:
    """Read configuration once. Nothing re-reads it during the run."""
    return RunConfig(load_interval(), load_skip_hours())


def write_config(interval_minutes: int, skip_hours):
    INTERVAL_FILE.write_text(f"{interval_minutes}\n")
    SKIP_HOURS_FILE.write_text(",".join(str(h) for h in sorted(skip_hours)) + "\n")


# ---------------------------------------------------------------------------
# Process environment
# ---------------------------------------------------------------------------


def claude_bin() -> Path:
    return Path(os.getenv("KEEPWARM_CLAUDE_BIN", str(DEFAULT_CLAUDE_BIN))).expanduser()


def augment_path():
    """Prepend Homebrew and the Claude install dir to PATH if missing."""
    current = [p for p in os.environ.get("PATH", "").split(os.pathsep) if p]
    wanted = EXTRA_PATHS + [str(claude_bin().parent)]
    extra = [p for p in dict.fromkeys(wanted) if p not in current]
    os.environ["PATH"] = os.pathsep.join(extra + current)


def claude_env() -> dict:
    """Current environment minus the nested-session guard variables."""
    return {k: v for k, v in os.environ.items() if k not in NESTED_GUARD_VARS}


def tmux_available() -> bool:
    return shutil.which("tmux") is not None


def check_preconditions() -> Path:
    """Return the Claude binary path, or raise if the run cannot go interactive."""
    claude = claude_bin()
    if not (claude.is_file() and os.access(claude, os.X_OK)):
        raise BinaryMissing(f"Binary not found at {claude}")
    if not tmux_available():
        raise CapabilityMissing("tmux is required (brew install tmux)")
    return claude


# ---------------------------------------------------------------------------
# Terminal
# ---------------------------------------------------------------------------

_session_counter = itertools.count(1)


def new_session_id() -> str:
    """Session name from the pid plus a counter, so no two runs share one."""
    return f"cw-{os.getpid()}-{next(_session_counter)}"


class TmuxTerminal:
    """
    A detached tmux session, written with send-keys and read with capture-pane.

    Anything exposing session_id, create(), send_keys(), capture() and
    destroy() can replace it (the tests use a scripted fake).

    Usage:
        with TmuxTerminal(new_session_id()) as term:
            term.send_keys("claude")
            text = term.capture(full_scrollback=True)
    """

    def __init__(self, session_id: str, width: int = TERM_WIDTH, height: int = TERM_HEIGHT):
        self.session_id = session_id
        self.width = width
        self.height = height
        self._alive = False

    def _tmux(self, *args, check: bool = True, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["tmux", *args],
            capture_output=True,
            text=True,
            timeout=TMUX_TIMEOUT if timeout is None else min(TMUX_TIMEOUT, timeout),
            check=check,
        )

    def create(self):
        try:
            self._tmux(
                "new-session", "-d", "-s", self.session_id,
                "-x", str(self.width), "-y", str(self.height),
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            raise TerminalError(f"Failed to create tmux session '{self.session_id}': {e}") from e
        self._alive = True

    def send_keys(self, text: str, submit: bool = True):
        """Type ``text`` literally, then press Enter if ``submit``."""
        try:
            if text:
                self._tmux("send-keys", "-t", self.session_id, "-l", text)
            if submit:
                self._tmux("send-keys", "-t", self.session_id, "Enter")
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            raise TerminalError(f"send-keys to '{self.session_id}' failed: {e}") from e

    def capture(self, full_scrollback: bool = False, timeout: Optional[float] = None) -> str:
        """
        Plain text of the pane (no ANSI). Empty string if tmux can't answer
        within ``timeout`` seconds (capped at TMUX_TIMEOUT).
        """
        args = ["capture-pane", "-t", self.session_id, "-p"]
        if full_scrollback:
            args += ["-S", "-"]
        try:
            result = self._tmux(*args, check=False, timeout=timeout)
        except (subprocess.TimeoutExpired, OSError):
            return ""
        return result.stdout if result.returncode == 0 else ""

    def destroy(self):
        if not self._alive:
            return
        self._alive = False
        try:
            self._tmux("kill-session", "-t", self.session_id, check=False)
        except (subprocess.TimeoutExpired, OSError) as e:
            log.warning(f"Could not kill tmux session '{self.session_id}': {e}")

    def __enter__(self):
        self.create()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.destroy()
        return False


def wait_for(terminal, pattern: str, timeout: float, interval: float = POLL_INTERVAL) -> bool:
    """
    Poll the visible screen until ``pattern`` (extended regex, case-insensitive)
    appears. Returns True on match, False on timeout.

    At most timeout/interval samples are taken (at least one). Each sample is
    given only the time left before the deadline, so the call never outlasts
    ``timeout`` seconds of wall clock, however slowly the pane answers.
    """
    regex = re.compile(pattern, re.IGNORECASE)
    attempts = max(1, int(timeout / interval))
    deadline = time.monotonic() + timeout
    for _ in range(attempts):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        if regex.search(terminal.capture(timeout=remaining)):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        time.sleep(min(interval, remaining))
    return False


# ---------------------------------------------------------------------------
# Session driver
# ---------------------------------------------------------------------------


class Markers(NamedTuple):
    """Text Claude prints at each step. Matched case-insensitively."""
    ready: str = "❯"
    trust: str = "quick|safety"
    confirm_hint: str = r"Enter.*confirm"
    usage: str = r"% used|resets "

    @property
    def boot(self) -> str:
        return f"{self.ready}|{self.trust}"


DEFAULT_MARKERS = Markers()


class DriverState(Enum):
    CREATED = "created"
    BOOTING = "booting"
    TRUST_PENDING = "trust_pending"
    READY = "ready"
    CAPTURED = "captured"
    DONE = "done"
    FAILED = "failed"


class SessionDriver:
    """
    Walks one terminal session from a shell prompt to a /usage capture.

    The session is destroyed before run() returns or raises. Boot and trust
    timeouts raise; a missing usage panel only logs a warning and whatever
    is on screen gets captured anyway.
    """

    def __init__(
        self,
        terminal,
        claude_path: Path,
        markers: Markers = DEFAULT_MARKERS,
        boot_timeout: float = BOOT_TIMEOUT,
        trust_timeout: float = TRUST_TIMEOUT,
        status_timeout: float = STATUS_TIMEOUT,
    ):
        self.terminal = terminal
        self.claude_path = Path(claude_path)
        self.markers = markers
        self.boot_timeout = boot_timeout
        self.trust_timeout = trust_timeout
        self.status_timeout = status_timeout
        self.state = DriverState.CREATED
        self.status_panel_seen = False

    def _enter(self, state: DriverState):
        log.debug(f"[{self.terminal.session_id}] {self.state.value} -> {state.value}")
        self.state = state

    def run(self) -> str:
        log.info(f"Spawning tmux session '{self.terminal.session_id}'...")
        self.terminal.create()
        try:
            self._boot()
            self._query_status()
            text = self.terminal.capture(full_scrollback=True)
            self._enter(DriverState.CAPTURED)
        except Exception:
            self._enter(DriverState.FAILED)
            raise
        finally:
            self.terminal.destroy()
        self._enter(DriverState.DONE)
        log.info(f"Captured {len(text)} chars of screen history")
        return text

    def _boot(self):
        self._enter(DriverState.BOOTING)
        # CLAUDECODE= prevents the "nested session" refusal
        self.terminal.send_keys(f"CLAUDECODE= {shlex.quote(str(self.claude_path))}")
        if not wait_for(self.terminal, self.markers.boot, self.boot_timeout):
            raise BootTimeout(f"Claude failed to start within {self.boot_timeout:g}s")

        if re.search(self.markers.trust, self.terminal.capture(), re.IGNORECASE):
            self._confirm_trust()
        self._enter(DriverState.READY)

    def _confirm_trust(self):
        self._enter(DriverState.TRUST_PENDING)
        log.info("Trust dialog detected, confirming...")
        wait_for(self.terminal, self.markers.confirm_hint, CONFIRM_HINT_TIMEOUT)
        self.terminal.send_keys("", submit=True)
        if not wait_for(self.terminal, self.markers.ready, self.trust_timeout):
            raise TrustTimeout(
                f"REPL prompt never appeared within {self.trust_timeout:g}s of trust confirmation"
            )

    def _query_status(self):
        # The first Enter picks the autocomplete suggestion, the second submits
        self.terminal.send_keys(STATUS_COMMAND, submit=True)
        time.sleep(SETTLE_DELAY)
        self.terminal.send_keys("", submit=True)

        if wait_for(self.terminal, self.markers.usage, self.status_timeout):
            self.status_panel_seen = True
        else:
            log.warning(f"{STATUS_COMMAND} stats did not appear within {self.status_timeout:g}s")


# ---------------------------------------------------------------------------
# Activity classifier & pinger
# ---------------------------------------------------------------------------


class ActivityStatus(NamedTuple):
    active: bool
    summary: str = ""


def classify(capture: str, markers: Markers = DEFAULT_MARKERS) -> ActivityStatus:
    """
    Active if any line of the capture shows a usage percentage or a reset time.

    The whole scrollback is searched, not only the last screen, so a stale
    panel from earlier in the same session history would also match.
    """
    regex = re.compile(markers.usage, re.IGNORECASE)
    hits = [" ".join(line.split()) for line in capture.splitlines() if regex.search(line)]
    if not hits:
        return ActivityStatus(False)
    return ActivityStatus(True, " ".join(hits))


def _kill_group(proc: subprocess.Popen):
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        log.warning(f"Ping process {proc.pid} did not exit after SIGKILL")


def ping(claude_path: Path, grace: float = PING_GRACE, message: str = PING_MESSAGE) -> bool:
    """
    Send Claude a one-line greeting so it opens a new usage window.

    Runs as a bare subprocess in a throwaway directory, outside tmux. After
    ``grace`` seconds the whole process group is SIGKILLed whether or not it
    finished; that is the expected ending. Output is discarded. The effect
    only shows up in the next run's /usage panel.

    Returns False if the process could not be started at all.
    """
    cmd = [str(claude_path)]
    caffeinate = shutil.which("caffeinate")
    if caffeinate:
        cmd = [caffeinate, "-i", *cmd]

    with tempfile.TemporaryDirectory(prefix="keepwarm-") as workdir:
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                cwd=workdir,
                env=claude_env(),
                text=True,
                start_new_session=True,
            )
        except OSError as e:
            log.error(f"Could not start ping: {e}")
            return False

        log.info(f"Claude process started (PID: {proc.pid}). Syncing...")
        try:
            proc.stdin.write(message + "\n")
            proc.stdin.close()
        except OSError as e:
            log.debug(f"Ping stdin closed early: {e}")

        time.sleep(grace)
        _kill_group(proc)

    log.info("Sync process complete.")
    return True


def notify(message: str, title: str = "Claude Sync"):
    """Best-effort macOS notification."""
    if not shutil.which("osascript"):
        return
    script = f"display notification {_applescript_str(message)} with title {_applescript_str(title)}"
    try:
        subprocess.run(["osascript", "-e", script], capture_output=True, timeout=10)
    except (subprocess.TimeoutExpired, OSError) as e:
        log.debug(f"Notification failed: {e}")


def _applescript_str(text: str) -> str:
    """AppleScript string literal."""
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


# ---------------------------------------------------------------------------
# Wake scheduling
# ---------------------------------------------------------------------------


def next_wake(now: datetime, interval_minutes: int, skip_hours) -> Optional[datetime]:
    """
    First ``now + k * interval`` (k >= 1) whose local hour is not a skip hour.

    Hour-granular: 05:59 is hour 5 and gets skipped just like 05:00.
    Returns None once the offset runs past 24 hours, meaning no allowed
    slot is reachable with this interval.
    """
    if interval_minutes < 1:
        raise ValueError(f"interval must be a positive number of minutes, got {interval_minutes}")
    offset = interval_minutes
    while True:
        candidate = now + timedelta(minutes=offset)
        if candidate.hour not in skip_hours:
            return candidate
        offset += interval_minutes
        if offset > MAX_SEARCH_MINUTES:
            return None


def format_wake(instant: datetime) -> str:
    return instant.strftime(WAKE_FORMAT)


def arm_wake(instant: datetime) -> bool:
    """
    Ask pmset to wake the machine at ``instant``. Needs the sudoers rule
    written by --install; sudo -n keeps us from hanging on a password prompt.
    """
    stamp = format_wake(instant)
    try:
        result = subprocess.run(
            ["sudo", "-n", PMSET, "schedule", "wake", stamp],
            capture_output=True,
            text=True,
            timeout=ARM_TIMEOUT,
        )
    except (subprocess.TimeoutExpired, OSError) as e:
        log.warning(f"Failed to schedule next wake: {e} (run keepwarm.py --install to fix sudoers)")
        return False
    if result.returncode != 0:
        detail = result.stderr.strip()
        detail = f": {detail}" if detail else ""
        log.warning(f"Failed to schedule next wake{detail} (run keepwarm.py --install to fix sudoers)")
        return False
    log.info(f"Next wake scheduled: {stamp}")
    return True


def schedule_next(config: RunConfig, now: datetime) -> tuple[Optional[datetime], bool]:
    """Compute and arm the next wake. Returns (instant, armed)."""
    instant = next_wake(now, config.interval_minutes, config.skip_hours)
    if instant is None:
        log.warning(
            f"No wake slot outside skip hours within 24h "
            f"(interval {config.interval_minutes}m). Next wake not armed."
        )
        return None, False
    return instant, arm_wake(instant)


# ---------------------------------------------------------------------------
# Run coordinator
# ---------------------------------------------------------------------------


class RunResult(NamedTuple):
    session_id: Optional[str]
    status: Optional[ActivityStatus]
    error: Optional[str]
    wake: Optional[datetime]
    armed: bool
    # None when the run never got as far as issuing /usage
    status_panel_seen: Optional[bool] = None


def run_sync(config: RunConfig, clock=datetime.now) -> RunResult:
    """
    One supervised invocation. Errors in the interactive part are logged and
    swallowed here; the next wake is always computed and armed afterwards.
    """
    start = clock()
    log.info(f"--- SYNC START: {start:%c} ---")
    session_id = None
    status = None
    error = None
    status_panel_seen = None

    if start.hour in config.skip_hours:
        log.info(f"Hour {start.hour:02d} is a skip hour. Not touching Claude this run.")
    else:
        try:
            claude = check_preconditions()
            session_id = new_session_id()
            driver = SessionDriver(
                TmuxTerminal(session_id),
                claude,
                boot_timeout=_env_seconds("BOOT_TIMEOUT", BOOT_TIMEOUT),
                trust_timeout=_env_seconds("TRUST_TIMEOUT", TRUST_TIMEOUT),
                status_timeout=_env_seconds("STATUS_TIMEOUT", STATUS_TIMEOUT),
            )
            capture = driver.run()
            status_panel_seen = driver.status_panel_seen
            status = classify(capture)
            if status.active:
                log.info("Active session detected. Skipping ping.")
                log.info(f"Scraped Status: {status.summary}")
            else:
                log.info("No active session found. Triggering 'Hi' ping...")
                if ping(claude, grace=_env_seconds("PING_GRACE", PING_GRACE)):
                    notify("New Claude Session Started!")
        except SyncError as e:
            error = type(e).__name__
            log.error(f"{error}: {e}")
        except Exception as e:
            error = type(e).__name__
            log.exception(f"Unexpected failure: {e}")

    wake, armed = schedule_next(config, clock())
    log.info(f"--- SYNC END: {clock():%c} ---")
    return RunResult(session_id, status, error, wake, armed, status_panel_seen)


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------


def plist_path() -> Path:
    return LAUNCH_AGENTS_DIR / f"{PLIST_NAME}.plist"


def build_plist(interval_minutes: int) -> dict:
    return {
        "Label": PLIST_NAME,
        "ProgramArguments": [sys.executable, str(Path(__file__).resolve())],
        "StartInterval": interval_minutes * 60,
        "RunAtLoad": True,
    }


def sudoers_rule(user: Optional[str] = None) -> str:
    """Passwordless sudo scoped to 'pmset schedule wake' only."""
    user = user or getpass.getuser()
    return f"{user} ALL=(root) NOPASSWD: {PMSET} schedule wake *\n"


def install_sudoers():
    if SUDOERS_FILE.exists():
        return
    print()
    print("Setting up passwordless wake scheduling (requires sudo once)...")
    subprocess.run(
        ["sudo", "tee", str(SUDOERS_FILE)],
        input=sudoers_rule(),
        text=True,
        stdout=subprocess.DEVNULL,
        check=True,
    )
    subprocess.run(["sudo", "chmod", "0440", str(SUDOERS_FILE)], check=True)
    print(f"Created {SUDOERS_FILE}")


def install(interval_minutes: int, skip_hours_text: str):
    """Persist config, load the launchd agent, and start the wake chain."""
    if interval_minutes < 1:
        raise ConfigError(f"Interval must be at least 1 minute, got {interval_minutes}")
    skip_hours = parse_skip_hours(skip_hours_text, strict=True)
    write_config(interval_minutes, skip_hours)

    dest = plist_path()
    subprocess.run(["launchctl", "unload", str(dest)], capture_output=True)
    dest.parent.mkdir(parents=True, exist_ok=True)
    with open(dest, "wb") as f:
        plistlib.dump(build_plist(interval_minutes), f)
    subprocess.run(["launchctl", "load", str(dest)], check=True)

    print(f"Installed and loaded {dest}")
    print(f"Script path: {Path(__file__).resolve()}")
    print(f"Interval: every {interval_minutes} minutes")
    print(f"Skip hours: {','.join(str(h) for h in sorted(skip_hours)) or 'none'}")

    install_sudoers()

    # Per-run scheduling replaces any old daily repeat
    subprocess.run(["sudo", PMSET, "repeat", "cancel"], capture_output=True)

    first = next_wake(datetime.now(), interval_minutes, skip_hours)
    if first is None:
        print("No wake slot outside skip hours. Chain not started.")
    elif arm_wake(first):
        print(f"First wake scheduled: {format_wake(first)}")
    else:
        print("Failed to schedule the first wake. Check the sudoers rule.")


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


def check_config():
    """Show what a run would use. No tmux session, no wake armed."""
    config = load_config()
    claude = claude_bin()

    print("keepwarm — configuration check")
    print(f"  Base dir:    {BASE_DIR}")
    print(f"  Interval:    {config.interval_minutes} minutes"
          f"{'' if INTERVAL_FILE.exists() else ' (default)'}")
    skip = ",".join(str(h) for h in sorted(config.skip_hours)) or "none"
    print(f"  Skip hours:  {skip}{'' if SKIP_HOURS_FILE.exists() else ' (default)'}")
    print()

    ok = True
    if claude.is_file() and os.access(claude, os.X_OK):
        print(f"  Claude:      {claude}")
    else:
        print(f"  Claude:      NOT FOUND at {claude} (set KEEPWARM_CLAUDE_BIN)")
        ok = False
    if tmux_available():
        print("  tmux:        found")
    else:
        print("  tmux:        NOT FOUND (brew install tmux)")
        ok = False
    print(f"  caffeinate:  {'found' if shutil.which('caffeinate') else 'not found (ping runs without it)'}")
    print(f"  pmset:       {'found' if Path(PMSET).exists() else 'NOT FOUND (wakes cannot be armed)'}")
    print(f"  sudoers:     {'present' if SUDOERS_FILE.exists() else 'MISSING (run --install)'}")
    print(f"  Agent:       {'installed' if plist_path().exists() else 'not installed'}")

    print()
    wake = next_wake(datetime.now(), config.interval_minutes, config.skip_hours)
    print(f"  Next wake:   {format_wake(wake) if wake else 'none within 24h'}")
    print()
    print("Configuration OK." if ok else "Fix issues above, then run: python3 keepwarm.py")


def main():
    """Main entry point."""
    import argparse
    parser = argparse.ArgumentParser(
        description="keepwarm — keep a Claude usage window warm across sleep/wake",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--check", action="store_true",
        help="Validate configuration without starting Claude or arming a wake",
    )
    parser.add_argument(
        "--next-wake", action="store_true",
        help="Print the next allowed wake time and exit",
    )
    parser.add_argument(
        "--install", action="store_true",
        help="Write config, load the launchd agent and arm the first wake",
    )
    parser.add_argument(
        "--interval", type=int, default=DEFAULT_INTERVAL,
        help=f"Minutes between runs, with --install (default: {DEFAULT_INTERVAL})",
    )
    parser.add_argument(
        "--skip-hours", default="3,4,5",
        help="Comma-separated hours (0-23) to skip, with --install (default: 3,4,5)",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    args = parser.parse_args()

    load_env()
    augment_path()

    if args.install:
        try:
            install(args.interval, args.skip_hours)
        except (ConfigError, subprocess.CalledProcessError, OSError) as e:
            print(f"Install failed: {e}")
            sys.exit(1)
        return

    if args.check:
        check_config()
        return

    if args.next_wake:
        config = load_config()
        wake = next_wake(datetime.now(), config.interval_minutes, config.skip_hours)
        print(format_wake(wake) if wake else "No wake slot outside skip hours within 24h")
        return

    setup_logging()
    # Exit status is the same whatever happened; the result is only logged
    run_sync(load_config())


if __name__ == "__main__":
    main()
