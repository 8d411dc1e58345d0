"""Run-state persistence for resume and audit."""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from .errors import StateStoreError
from .models import RunState

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    def save(self, state: RunState) -> None: ...

    def load(self) -> RunState: ...


class InMemoryStateStore:
    """Guarded in-memory copy. Used for tests and non-resumable runs."""

    def __init__(self, state: RunState | None = None):
        self._lock = threading.Lock()
        self._state = copy.deepcopy(state) if state else RunState()

    def save(self, state: RunState) -> None:
        with self._lock:
            self._state = copy.deepcopy(state)

    def load(self) -> RunState:
        with self._lock:
            return copy.deepcopy(self._state)


class FileStateStore:
    """JSON file state store.

    Every save overwrites the whole document by writing a temp file in the
    same directory and renaming it into place, so readers never see a
    partially written file. A missing file loads as an empty state.
    """

    def __init__(self, path: str | Path):
        self._raw_path = str(path) if path else ""
        self.path = Path(self._raw_path)
        self._lock = threading.Lock()

    def save(self, state: RunState) -> None:
        if not self._raw_path:
            raise StateStoreError("state file path is empty")

        data = json.dumps(state.to_dict(), indent=2)

        with self._lock:
            directory = self.path.parent
            try:
                directory.mkdir(parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(
                    prefix=f".{self.path.name}.", suffix=".tmp", dir=directory
                )
            except OSError as e:
                raise StateStoreError(f"create state dir: {e}") from e

            try:
                with os.fdopen(fd, "w") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except OSError as e:
                try:
                    os.remove(tmp_path)
                except FileNotFoundError:
                    pass
                raise StateStoreError(f"write state file: {e}") from e

        logger.debug("saved %d state item(s) to %s", len(state.items), self.path)

    def load(self) -> RunState:
        if not self._raw_path:
            raise StateStoreError("state file path is empty")

        with self._lock:
            try:
                raw = self.path.read_text()
            except FileNotFoundError:
                return RunState()
            except OSError as e:
                raise StateStoreError(f"read state file: {e}") from e

        try:
            return RunState.from_dict(json.loads(raw))
        except (ValueError, TypeError, KeyError) as e:
            raise StateStoreError(f"unmarshal state: {e}") from e
