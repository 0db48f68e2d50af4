import logging
from pathlib import Path

import pytest


class RecordingHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def messages(self, level: int = logging.DEBUG) -> list[str]:
        return [r.getMessage() for r in self.records if r.levelno >= level]

    def containing(self, text: str) -> list[str]:
        return [m for m in self.messages() if text in m]

    def clear(self) -> None:
        self.records.clear()


@pytest.fixture
def recorder():
    return RecordingHandler()


@pytest.fixture
def logger(request, recorder):
    log = logging.getLogger(f"replica_sync.tests.{request.node.name}")
    log.setLevel(logging.DEBUG)
    log.propagate = False
    log.addHandler(recorder)
    yield log
    log.removeHandler(recorder)


def _write(root: Path, tree: dict) -> None:
    root.mkdir(parents=True, exist_ok=True)
    for name, value in tree.items():
        if isinstance(value, dict):
            _write(root / name, value)
        else:
            (root / name).write_bytes(value.encode("utf-8") if isinstance(value, str) else value)


def _read(root: Path) -> dict:
    out = {}
    for entry in sorted(root.iterdir()):
        if entry.is_dir():
            out[entry.name] = _read(entry)
        else:
            out[entry.name] = entry.read_text(encoding="utf-8")
    return out


@pytest.fixture
def write_tree():
    return _write


@pytest.fixture
def read_tree():
    return _read
