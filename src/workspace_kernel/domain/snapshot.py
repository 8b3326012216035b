from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass

from workspace_kernel.domain.definitions import DefinitionRef, Repository, validate_repositories


def compute_snapshot_id(repositories: Iterable[Repository]) -> str:
    # Content hash over the canonical wire form; stable across processes for unchanged code.
    body = [repository.to_wire() for repository in repositories]
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


@dataclass(frozen=True, slots=True)
class LocationSnapshot:
    location_name: str
    origin_key: str
    repositories: tuple[Repository, ...]
    snapshot_id: str

    def repository(self, name: str) -> Repository | None:
        return next((item for item in self.repositories if item.name == name), None)

    def repository_names(self) -> list[str]:
        return [item.name for item in self.repositories]

    def ref(self, repository_name: str, definition_name: str) -> DefinitionRef:
        repository = self.repository(repository_name)
        if repository is None:
            raise KeyError(f"repository '{repository_name}' is not in location '{self.location_name}'")
        if (
            repository.job(definition_name) is None
            and repository.schedule(definition_name) is None
            and repository.sensor(definition_name) is None
        ):
            raise KeyError(f"definition '{definition_name}' is not in repository '{repository_name}'")
        return DefinitionRef(
            origin_key=self.origin_key,
            repository_name=repository_name,
            name=definition_name,
            snapshot_id=self.snapshot_id,
        )


def build_snapshot(
    *,
    location_name: str,
    origin_key: str,
    repositories: Iterable[Repository],
) -> LocationSnapshot:
    validated = validate_repositories(repositories)
    return LocationSnapshot(
        location_name=location_name,
        origin_key=origin_key,
        repositories=validated,
        snapshot_id=compute_snapshot_id(validated),
    )
