"""Per-unit checkpoint stores.

Payloads are persisted as canonical JSON text. Every store decodes that text
on ``get``, so a result read back on resume is indistinguishable from a
freshly computed one that went through the same store.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from batch_heal.engine.models import UnitResult

if TYPE_CHECKING:
    from batch_heal.config import Settings

_CHECKPOINT_FILE_PATTERN = re.compile(r"^unit_(\d+)\.json$")


class CheckpointConflictError(RuntimeError):
    """A different payload was offered for an already checkpointed index."""

    def __init__(self, index: int) -> None:
        super().__init__(
            f"Checkpoint for unit {index} already exists with different content; "
            "refusing to overwrite.",
        )
        self.index = index


@runtime_checkable
class CheckpointStore(Protocol):
    """Durable index -> result mapping for one run.

    ``put`` is idempotent for identical content and raises
    :class:`CheckpointConflictError` for different content.
    """

    def has(self, index: int) -> bool: ...

    def get(self, index: int) -> UnitResult | None: ...

    def put(self, index: int, result: UnitResult) -> None: ...

    def indices(self) -> list[int]: ...


def encode_payload(payload: Any) -> str:
    """Canonical JSON used for persistence and byte-identical comparison."""

    return json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def decode_payload(text: str) -> Any:
    return json.loads(text)


def payload_checksum(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def validate_checkpoint_index(index: int, result: UnitResult) -> None:
    if index < 0:
        raise ValueError(f"Checkpoint index must be >= 0, got {index}")
    if result.index != index:
        raise ValueError(f"Result index {result.index} does not match checkpoint index {index}")


class InMemoryCheckpointStore:
    """Process-local store for tests and throwaway runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[int, str] = {}

    def has(self, index: int) -> bool:
        with self._lock:
            return index in self._entries

    def get(self, index: int) -> UnitResult | None:
        with self._lock:
            text = self._entries.get(index)
        if text is None:
            return None
        return UnitResult(index=index, payload=decode_payload(text))

    def put(self, index: int, result: UnitResult) -> None:
        validate_checkpoint_index(index, result)
        text = encode_payload(result.payload)
        with self._lock:
            existing = self._entries.get(index)
            if existing is None:
                self._entries[index] = text
                return
        if existing != text:
            raise CheckpointConflictError(index)

    def indices(self) -> list[int]:
        with self._lock:
            return sorted(self._entries)


class FileCheckpointStore:
    """One JSON file per unit under ``root_dir / run_id``.

    A checkpoint is written to a temporary file in the same directory,
    fsynced, and then published with a hard link. Linking fails when the
    target exists, so concurrent writers (other instances or processes on the
    same run directory) can never replace a checkpoint; the loser compares
    content and either returns or raises :class:`CheckpointConflictError`.
    """

    def __init__(self, root_dir: Path, run_id: str) -> None:
        self.run_dir = root_dir / run_id
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, run_id: str) -> FileCheckpointStore:
        settings.validate()
        return cls(settings.checkpoint_dir, run_id)

    def path_for(self, index: int) -> Path:
        return self.run_dir / f"unit_{index:05d}.json"

    def has(self, index: int) -> bool:
        return self.path_for(index).is_file()

    def get(self, index: int) -> UnitResult | None:
        path = self.path_for(index)
        try:
            text = path.read_text("utf-8")
        except FileNotFoundError:
            return None
        return UnitResult(index=index, payload=decode_payload(text))

    def put(self, index: int, result: UnitResult) -> None:
        validate_checkpoint_index(index, result)
        text = encode_payload(result.payload)
        path = self.path_for(index)
        with self._lock:
            if path.is_file():
                self._ensure_same_content(path, index=index, text=text)
                return
            self.run_dir.mkdir(parents=True, exist_ok=True)
            if not self._publish(path, text):
                self._ensure_same_content(path, index=index, text=text)

    def indices(self) -> list[int]:
        if not self.run_dir.is_dir():
            return []
        found: list[int] = []
        for entry in self.run_dir.iterdir():
            match = _CHECKPOINT_FILE_PATTERN.match(entry.name)
            if match is not None:
                found.append(int(match.group(1)))
        return sorted(found)

    def _publish(self, path: Path, text: str) -> bool:
        """Write ``text`` durably and link it to ``path``; False if ``path`` exists."""

        fd, tmp_name = tempfile.mkstemp(dir=self.run_dir, prefix=f".{path.name}.", suffix=".tmp")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            try:
                os.link(tmp_path, path)
            except FileExistsError:
                return False
            return True
        finally:
            tmp_path.unlink(missing_ok=True)

    @staticmethod
    def _ensure_same_content(path: Path, *, index: int, text: str) -> None:
        if path.read_text("utf-8") != text:
            raise CheckpointConflictError(index)
