# /replica_sync.py
"""
Replica Sync
- One-way periodic mirror of a source folder onto a replica folder.
- Files are compared by MD5 content digest, never by size or timestamps.
- Extra files and folders in the replica are deleted.
- File deletes are retried with exponential backoff (locked files).
- Optional gitignore-style ignore rules.
- Optional watch mode: source changes wake the loop before the interval ends.
- Styled console output:
  - COPY green
  - DELETE / RMDIR orange
  - MKDIR light brown
  - failures red
- Log file is always plain (no color codes).

Usage
  pip install watchdog pathspec colorama
  replica-sync "/src" "/dst" 30 "logs/sync.log"
  replica-sync                          # reads ./config.json
  replica-sync --config sync.json --once
"""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
import os
import shutil
import signal
import stat
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from colorama import just_fix_windows_console
from pathspec import PathSpec
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

DEFAULT_CONFIG_PATH = Path("config.json")

USAGE = (
    "Usage: replica-sync <source> <replica> <interval_sec> <log_file> "
    "or no arguments to read the config file"
)

# reads of source files during hashing must not wake the loop
READ_ONLY_EVENTS = {"opened", "closed_no_write"}

PathLike = Union[str, Path]


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "MKDIR": Ansi.LIGHT_BROWN,
    "DELETE": Ansi.ORANGE,
    "RMDIR": Ansi.ORANGE,
    "FAIL": Ansi.RED,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except ValueError:
        # closed stream
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if action and action in base:
            action_color = ACTION_COLORS.get(action, "")
            base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(funcName)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logger(log_file: Path, name: str = "replica_sync", level: int = logging.INFO) -> logging.Logger:
    """
    Configure the named logger with a plain file handler and a colored console handler.

    Handler failures (disk full, closed stream) are reported on stderr by
    logging.Handler.handleError and never reach the caller.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    current = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
    if current and all(h.baseFilename == os.path.abspath(log_file) for h in current):
        return logger

    fh = logging.FileHandler(log_file, encoding="utf-8")

    # reconfigured for a different log file
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    just_fix_windows_console()

    fh.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    fh.setLevel(level)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_file)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[str] = None,
    is_dir: bool = False,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = path
        extra["is_dir"] = is_dir
    # stacklevel=2 reports the calling operation in %(funcName)s
    logger.log(level, f"{action} | {message}", extra=extra, stacklevel=2)


# -------------------------
# Errors
# -------------------------

class ConfigError(ValueError):
    """Invalid command line or config file; aborts startup."""


class SyncError(Exception):
    """Structural failure that aborts the current pass."""

    def __init__(self, directory: Path, cause: BaseException):
        super().__init__(f"{directory}: {cause}")
        self.directory = directory
        self.cause = cause


class RetryExhaustedError(Exception):
    """Every attempt of a retried operation failed; ``errors`` holds one exception per attempt."""

    def __init__(self, description: str, errors: list[BaseException]):
        detail = "; ".join(f"{type(e).__name__}: {e}" for e in errors)
        super().__init__(f"{description} failed after {len(errors)} attempts ({detail})")
        self.description = description
        self.errors = errors


# -------------------------
# Retry policy
# -------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.1
    retry_on: tuple = (OSError,)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must not be negative, got {self.base_delay}")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return self.base_delay * (2 ** attempt)

    def call(
        self,
        func: Callable,
        *args,
        description: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        what = description or getattr(func, "__name__", "operation")
        errors: list[BaseException] = []

        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args)
            except self.retry_on as e:
                errors.append(e)
                if attempt == self.max_attempts:
                    break
                delay = self.delay(attempt)
                if logger is not None:
                    logger.warning(
                        "Retrying %s in %.2fs (attempt %d/%d): %s",
                        what, delay, attempt, self.max_attempts, e,
                    )
                self.sleep(delay)

        raise RetryExhaustedError(what, errors) from errors[-1]


# -------------------------
# Content comparison
# -------------------------

def file_digest(path: Path, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.md5()
    with path.open("rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def files_equal(path_a: Path, path_b: Path) -> bool:
    """True when both files have the same content digest. Raises OSError if either cannot be read."""
    return file_digest(path_a) == file_digest(path_b)


# -------------------------
# Ignore + filesystem helpers
# -------------------------

class IgnoreMatcher:
    def __init__(self, source_root: Path, patterns: Iterable[str]):
        self.source_root = source_root
        self.patterns = list(patterns)
        self.spec = PathSpec.from_lines("gitwildmatch", self.patterns)

    def is_ignored(self, path: Path, is_dir: bool = False) -> bool:
        try:
            rel = path.relative_to(self.source_root)
        except ValueError:
            return False
        if not rel.parts:
            return False
        rel_posix = rel.as_posix()
        if is_dir:
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def list_entries(directory: Path) -> tuple[list[Path], list[Path]]:
    """Immediate files and subdirectories of ``directory``, sorted by name. Symlinks are skipped."""
    files: list[Path] = []
    dirs: list[Path] = []
    for entry in sorted(directory.iterdir()):
        if entry.is_symlink():
            continue
        if entry.is_dir():
            dirs.append(entry)
        elif entry.is_file():
            files.append(entry)
    return files, dirs


def list_links(directory: Path) -> list[Path]:
    return sorted(entry for entry in directory.iterdir() if entry.is_symlink())


def _unlink_if_present(path: Path) -> None:
    path.unlink(missing_ok=True)


# -------------------------
# Synchronizer
# -------------------------

@dataclass
class SyncStats:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    failed: int = 0

    @property
    def changes(self) -> int:
        return self.created + self.updated + self.deleted

    def summary(self) -> str:
        return (
            f"created={self.created} updated={self.updated} skipped={self.skipped} "
            f"deleted={self.deleted} failed={self.failed}"
        )


def _require_path(value: Optional[PathLike], label: str) -> Path:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(f"{label} path must not be empty")
    return Path(value)


class TreeSynchronizer:
    """
    Mirrors ``source_root`` onto ``replica_root``.

    Per-file copy failures are logged and skipped. Anything else (listing,
    creating a directory, exhausted delete retries) aborts the pass with
    SyncError.
    """

    def __init__(
        self,
        source_root: PathLike,
        replica_root: PathLike,
        logger: logging.Logger,
        *,
        comparator: Callable[[Path, Path], bool] = files_equal,
        retry_policy: Optional[RetryPolicy] = None,
        ignore: Optional[IgnoreMatcher] = None,
    ):
        self.source_root = _require_path(source_root, "Source")
        self.replica_root = _require_path(replica_root, "Replica")
        if logger is None:
            raise ValueError("A logger is required")
        if comparator is None:
            raise ValueError("A comparator is required")
        self.logger = logger
        self.comparator = comparator
        self.retry_policy = retry_policy or RetryPolicy()
        self.ignore = ignore
        self.stats = SyncStats()

    def run(self) -> SyncStats:
        self.stats = SyncStats()
        self.logger.info("Starting synchronization: %s -> %s", self.source_root, self.replica_root)
        start = time.monotonic()
        try:
            self.sync_directories(self.source_root, self.replica_root)
        except Exception as e:
            self.logger.error("Synchronization failed: %s", e, exc_info=True)
            raise
        elapsed = time.monotonic() - start
        self.logger.info("Synchronization complete in %.2fs (%s)", elapsed, self.stats.summary())
        return self.stats

    def sync_directories(self, source_dir: Path, replica_dir: Path) -> None:
        try:
            self._ensure_directory(replica_dir)
            source_files, source_dirs = self._list_source(source_dir)

            for src_file in source_files:
                self._sync_file(src_file, replica_dir / src_file.name)

            for src_sub in source_dirs:
                self.sync_directories(src_sub, replica_dir / src_sub.name)

            # children already cleaned their own subtrees
            self._delete_orphans_here(source_files, source_dirs, replica_dir)
        except SyncError:
            raise
        except Exception as e:
            shown = self._display(source_dir)
            log_action(
                self.logger,
                "FAIL",
                f"Synchronization failed for {shown}: {e}",
                path=shown,
                is_dir=True,
                level=logging.ERROR,
            )
            raise SyncError(source_dir, e) from e

    def delete_orphans(self, source_dir: Path, replica_dir: Path) -> None:
        source_files, source_dirs = self._list_source(source_dir)
        self._delete_orphans_here(source_files, source_dirs, replica_dir)

        source_dir_names = {d.name for d in source_dirs}
        _, replica_dirs = list_entries(replica_dir)
        for replica_sub in replica_dirs:
            if replica_sub.name in source_dir_names:
                self.delete_orphans(source_dir / replica_sub.name, replica_sub)

    # -- helpers --

    def _list_source(self, source_dir: Path) -> tuple[list[Path], list[Path]]:
        files, dirs = list_entries(source_dir)
        if self.ignore is None:
            return files, dirs
        files = [f for f in files if not self.ignore.is_ignored(f, is_dir=False)]
        dirs = [d for d in dirs if not self.ignore.is_ignored(d, is_dir=True)]
        return files, dirs

    def _delete_orphans_here(self, source_files: list[Path], source_dirs: list[Path], replica_dir: Path) -> None:
        file_names = {f.name for f in source_files}
        dir_names = {d.name for d in source_dirs}
        replica_files, replica_dirs = list_entries(replica_dir)

        for path in replica_files:
            if path.name not in file_names:
                self._delete_file(path)

        # links are never mirrored, so any link in the replica is an orphan
        for path in list_links(replica_dir):
            self._delete_file(path)

        for path in replica_dirs:
            if path.name not in dir_names:
                self._delete_tree(path)

    def _ensure_directory(self, replica_dir: Path) -> None:
        if replica_dir.is_symlink() and replica_dir != self.replica_root:
            # never write through a link that leads out of the replica
            self._delete_file(replica_dir)
        if replica_dir.is_dir():
            return
        if replica_dir.exists() or replica_dir.is_symlink():
            # a file sits where the source has a directory
            self._delete_file(replica_dir)
        replica_dir.mkdir(parents=True, exist_ok=True)
        self.stats.created += 1
        shown = self._display(replica_dir)
        log_action(self.logger, "MKDIR", f"Created directory: {shown}", path=shown, is_dir=True)

    def _sync_file(self, src: Path, dst: Path) -> None:
        shown = self._display(dst)
        if dst.is_symlink():
            self._delete_file(dst)
        try:
            if dst.is_dir():
                self._delete_tree(dst)
            existed = dst.exists()
            if existed and self._same_content(src, dst):
                self.stats.skipped += 1
                self.logger.debug("Unchanged: %s", shown)
                return
            self._copy_over(src, dst)
        except OSError as e:
            self.stats.failed += 1
            log_action(self.logger, "FAIL", f"Failed to copy {shown}: {e}", path=shown, level=logging.ERROR)
            return

        if existed:
            self.stats.updated += 1
        else:
            self.stats.created += 1
        log_action(self.logger, "COPY", f"Copied: {shown}", path=shown)

    @staticmethod
    def _copy_over(src: Path, dst: Path) -> None:
        try:
            shutil.copy2(src, dst)
        except PermissionError:
            if not dst.exists():
                raise
            # copy2 carried a read-only mode over from the source last time
            dst.chmod(dst.stat().st_mode | stat.S_IWRITE)
            shutil.copy2(src, dst)

    def _same_content(self, src: Path, dst: Path) -> bool:
        try:
            return self.comparator(src, dst)
        except OSError as e:
            shown = self._display(dst)
            log_action(
                self.logger,
                "COPY",
                f"Compare failed, copying anyway: {shown} | {e}",
                path=shown,
                level=logging.WARNING,
            )
            return False

    def _delete_file(self, path: Path) -> None:
        shown = self._display(path)
        # already gone is the goal state, not a transient failure
        self.retry_policy.call(_unlink_if_present, path, description=f"delete {shown}", logger=self.logger)
        self.stats.deleted += 1
        log_action(self.logger, "DELETE", f"Deleted: {shown}", path=shown)

    def _delete_tree(self, path: Path) -> None:
        shutil.rmtree(path)
        self.stats.deleted += 1
        shown = self._display(path)
        log_action(self.logger, "RMDIR", f"Deleted folder: {shown}", path=shown, is_dir=True)

    def _display(self, path: Path) -> str:
        for root in (self.replica_root, self.source_root):
            try:
                rel = path.relative_to(root)
            except ValueError:
                continue
            return rel.as_posix() if rel.parts else str(root)
        return str(path)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    source_dir: Path
    replica_dir: Path
    interval_sec: float
    log_file: Path
    ignore_patterns: tuple[str, ...] = ()
    max_attempts: int = 3
    base_delay: float = 0.1


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="replica-sync",
        description="Mirror a source folder onto a replica folder at a fixed interval.",
    )
    p.add_argument("source", nargs="?", default=None, help="Folder to mirror from.")
    p.add_argument("replica", nargs="?", default=None, help="Folder to mirror to.")
    p.add_argument("interval", nargs="?", default=None, help="Seconds between synchronization passes.")
    p.add_argument("log_file", nargs="?", default=None, help="Path of the log file.")
    p.add_argument("--config", type=str, default=str(DEFAULT_CONFIG_PATH), help="JSON config used when no positional arguments are given.")
    p.add_argument("--ignore", action="append", default=None, metavar="PATTERN", help="Gitignore-style pattern to exclude (repeatable).")
    p.add_argument("--once", action="store_true", help="Run a single pass and exit.")
    p.add_argument("--watch", action="store_true", help="Start the next pass early when the source changes.")
    return p.parse_args(argv)


def load_config_file(path: Path) -> dict:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Invalid configuration in config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid configuration in config file {path}: expected an object")
    return data


def _positive_float(value, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid {label}: {value!r}") from None
    if number <= 0:
        raise ConfigError(f"Invalid {label}: {value!r}")
    return number


def build_effective_config(args: argparse.Namespace) -> AppConfig:
    positionals = [args.source, args.replica, args.interval, args.log_file]
    given = [v for v in positionals if v is not None]
    if given and len(given) != len(positionals):
        raise ConfigError(USAGE)

    saved: dict = {}
    if given:
        source, replica, interval, log_file = positionals
    else:
        saved = load_config_file(Path(args.config))
        try:
            source = saved["source"]
            replica = saved["replica"]
            interval = saved["interval_sec"]
            log_file = saved["log_file"]
        except KeyError as e:
            raise ConfigError(f"Missing key in config file: {e.args[0]}") from None

    for label, value in (("source", source), ("replica", replica), ("log_file", log_file)):
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"Empty or invalid {label} path")

    ignore = args.ignore if args.ignore else saved.get("ignore", [])
    if not isinstance(ignore, list) or not all(isinstance(p, str) for p in ignore):
        raise ConfigError("ignore must be a list of patterns")

    max_attempts = saved.get("max_attempts", 3)
    if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1:
        raise ConfigError(f"Invalid max_attempts: {max_attempts!r}")
    base_delay = _positive_float(saved.get("base_delay", 0.1), "base_delay")

    return AppConfig(
        source_dir=Path(source),
        replica_dir=Path(replica),
        interval_sec=_positive_float(interval, "time interval"),
        log_file=Path(log_file),
        ignore_patterns=tuple(ignore),
        max_attempts=max_attempts,
        base_delay=base_delay,
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def validate_paths(source: Path, replica: Path) -> tuple[Path, Path]:
    source = source.expanduser().resolve()
    replica = replica.expanduser().resolve()

    if not source.is_dir():
        raise ConfigError(f"Directory not found: {source}")
    if source == replica:
        raise ConfigError("Source and replica folders must be different.")
    if _is_subpath(replica, source):
        raise ConfigError("Replica folder must NOT be inside source folder (would cause loops).")
    if _is_subpath(source, replica):
        raise ConfigError("Source folder must NOT be inside replica folder (it would be deleted).")

    try:
        replica.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Cannot create replica folder {replica}: {e}") from e
    return source, replica


# -------------------------
# Driver
# -------------------------

class SyncLoop:
    """Runs the synchronizer, then waits ``interval_sec``; stop() ends the wait, never a pass."""

    def __init__(self, synchronizer: TreeSynchronizer, interval_sec: float, logger: logging.Logger):
        self.synchronizer = synchronizer
        self.interval_sec = interval_sec
        self.logger = logger
        self.stop_event = threading.Event()
        self.wake_event = threading.Event()

    def run_forever(self) -> None:
        self.logger.info("Sync loop started (interval=%.1fs)", self.interval_sec)
        while not self.stop_event.is_set():
            self.wake_event.clear()
            try:
                self.synchronizer.run()
            except Exception as e:
                self.logger.error("Fatal sync error: %s", e)
            if self.stop_event.is_set():
                break
            self.wake_event.wait(self.interval_sec)
        self.logger.info("Synchronization stopped by user request")

    def trigger(self) -> None:
        self.wake_event.set()

    def stop(self) -> None:
        self.stop_event.set()
        self.wake_event.set()


class SourceChangeHandler(FileSystemEventHandler):
    def __init__(self, loop: SyncLoop, ignore: Optional[IgnoreMatcher] = None):
        self.loop = loop
        self.ignore = ignore

    def on_any_event(self, event):
        if event.event_type in READ_ONLY_EVENTS:
            return
        if self.ignore is not None and self.ignore.is_ignored(Path(event.src_path), is_dir=bool(event.is_directory)):
            return
        self.loop.trigger()


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = build_effective_config(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    try:
        logger = setup_logger(cfg.log_file.expanduser().resolve())
    except OSError as e:
        print(f"Configuration error: cannot open log file {cfg.log_file}: {e}", file=sys.stderr)
        return 2

    try:
        source, replica = validate_paths(cfg.source_dir, cfg.replica_dir)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 2

    logger.info("Source : %s", source)
    logger.info("Replica: %s", replica)

    ignore = IgnoreMatcher(source, cfg.ignore_patterns) if cfg.ignore_patterns else None
    synchronizer = TreeSynchronizer(
        source,
        replica,
        logger,
        retry_policy=RetryPolicy(max_attempts=cfg.max_attempts, base_delay=cfg.base_delay),
        ignore=ignore,
    )

    if args.once:
        try:
            synchronizer.run()
        except Exception:
            # already logged by run()
            return 1
        return 0

    loop = SyncLoop(synchronizer, cfg.interval_sec, logger)

    observer = None
    if args.watch:
        observer = Observer()
        observer.schedule(SourceChangeHandler(loop, ignore), str(source), recursive=True)
        observer.start()
        logger.info("Watching source for changes")

    previous = signal.signal(signal.SIGINT, lambda signum, frame: loop.stop())
    try:
        loop.run_forever()
    finally:
        signal.signal(signal.SIGINT, previous)
        if observer is not None:
            observer.stop()
            observer.join(timeout=10)
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
