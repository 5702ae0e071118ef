"""File backed state used by the relay.

Three artifacts live on disk:

* the dedup file, a JSON array with the ids of every message already handed
  to the connector;
* the liveness marker, whose presence means "a relay process is running";
* a backup copy of the connector session directory, refreshed at shutdown.

None of them is shared between processes, so plain files are enough. The
dedup file is replaced atomically so a crash while writing keeps the previous
version readable.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Iterable, Optional, Set

from .errors import PersistenceError
from .logger import get_logger

logger = get_logger("WaRelay.persistence")


def _as_key(message_id: Any) -> str:
    return str(message_id)


class DedupStore:
    """Set of processed message ids, loaded once and persisted on demand."""

    def __init__(self, path: str | os.PathLike | None = None):
        """Keep the ids in ``path``; ``None`` makes the store memory-only."""
        self.path = Path(path) if path else None
        self._ids: Set[str] = set()
        self._dirty = False

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, message_id: Any) -> bool:
        return self.contains(message_id)

    @property
    def dirty(self) -> bool:
        """``True`` when ids were marked since the last successful persist."""
        return self._dirty

    def load(self) -> Set[str]:
        """Read the dedup file and replace the in-memory set with its content.

        A missing file yields an empty set. A file that cannot be read or does
        not contain a JSON array also yields an empty set, with a warning.
        """
        ids: Set[str] = set()
        if self.path is not None and self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Could not read dedup file %s, starting empty: %s", self.path, exc)
                raw = []
            if isinstance(raw, list):
                ids = {_as_key(item) for item in raw if item is not None}
            else:
                logger.warning("Dedup file %s does not hold a JSON array, starting empty", self.path)
        self._ids = ids
        self._dirty = False
        return set(ids)

    def contains(self, message_id: Any) -> bool:
        return _as_key(message_id) in self._ids

    def mark_processed(self, message_id: Any) -> None:
        key = _as_key(message_id)
        if key not in self._ids:
            self._ids.add(key)
            self._dirty = True

    def snapshot(self) -> Set[str]:
        """Return a copy of the ids currently known."""
        return set(self._ids)

    def persist(self, ids: Optional[Iterable[Any]] = None) -> None:
        """Write ``ids`` (default: the current set) to the dedup file.

        The content goes to a temporary file in the same directory which then
        replaces the target, so readers see either the old or the new array.
        """
        if self.path is None:
            self._dirty = False
            return
        values = sorted(_as_key(item) for item in (self._ids if ids is None else ids))
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(values, fh)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise PersistenceError(f"Could not write dedup file {self.path}: {exc}") from exc
        if ids is None:
            self._dirty = False
        logger.debug("Persisted %d processed ids to %s", len(values), self.path)


class LivenessMarker:
    """Flag file telling external tooling that the relay is running."""

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)

    def mark_running(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text("running", encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Could not write liveness marker {self.path}: {exc}") from exc

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Could not remove liveness marker {self.path}: {exc}") from exc

    def is_running(self) -> bool:
        return self.path.exists()


def backup_session(source: str | os.PathLike | None, target: str | os.PathLike | None) -> bool:
    """Copy the connector session directory over ``target``.

    Returns ``False`` when there is nothing to copy.
    """
    if not source or not target:
        return False
    src = Path(source)
    if not src.is_dir():
        return False
    try:
        shutil.copytree(src, Path(target), dirs_exist_ok=True)
    except OSError as exc:
        raise PersistenceError(f"Session backup from {src} to {target} failed: {exc}") from exc
    return True
