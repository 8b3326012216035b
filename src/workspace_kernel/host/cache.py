from __future__ import annotations

from dataclasses import dataclass
from threading import Lock

from workspace_kernel.domain.snapshot import LocationSnapshot


@dataclass(frozen=True, slots=True)
class _Published:
    snapshot: LocationSnapshot
    generation: int


class SnapshotCache:
    # Copy-on-write map origin_key -> snapshot; readers never lock, writers swap the whole map.
    def __init__(self) -> None:
        self._published: dict[str, _Published] = {}
        self._write_lock = Lock()

    def get(self, origin_key: str) -> LocationSnapshot | None:
        entry = self._published.get(origin_key)
        return entry.snapshot if entry is not None else None

    def version(self, origin_key: str) -> int | None:
        entry = self._published.get(origin_key)
        return entry.generation if entry is not None else None

    def publish(self, origin_key: str, snapshot: LocationSnapshot, generation: int | None = None) -> bool:
        # Older generations are rejected so a slow superseded load can never overwrite a newer snapshot.
        if snapshot.origin_key != origin_key:
            raise ValueError("snapshot origin_key does not match the publish key")
        with self._write_lock:
            current = self._published.get(origin_key)
            if generation is None:
                generation = current.generation + 1 if current is not None else 1
            if current is not None and generation < current.generation:
                return False
            updated = dict(self._published)
            updated[origin_key] = _Published(snapshot=snapshot, generation=generation)
            self._published = updated
            return True

    def evict(self, origin_key: str) -> LocationSnapshot | None:
        with self._write_lock:
            if origin_key not in self._published:
                return None
            updated = dict(self._published)
            entry = updated.pop(origin_key)
            self._published = updated
            return entry.snapshot

    def keys(self) -> list[str]:
        return list(self._published.keys())

    def snapshots(self) -> dict[str, LocationSnapshot]:
        return {key: entry.snapshot for key, entry in self._published.items()}
