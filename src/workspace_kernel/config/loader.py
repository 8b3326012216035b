from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import ValidationError

from workspace_kernel.config.models import (
    GrpcServerEntry,
    HostSettings,
    PythonFileEntry,
    PythonModuleEntry,
)
from workspace_kernel.domain.origins import (
    KIND_GRPC_SERVER,
    KIND_PYTHON_FILE,
    KIND_PYTHON_MODULE,
    GrpcServerOrigin,
    LocationOrigin,
    OriginError,
    PythonFileOrigin,
    PythonModuleOrigin,
)

_ALLOWED_ROOT_KEYS = {"load_from", "settings"}
_ENTRY_KINDS = (KIND_PYTHON_FILE, KIND_PYTHON_MODULE, KIND_GRPC_SERVER)


class ConfigError(ValueError):
    # Raised for an unusable workspace file (fail fast on the file, not on single entries).
    pass


class WorkspaceFileNotFoundError(ConfigError):
    pass


@dataclass(frozen=True, slots=True)
class ConfigEntryError:
    # One rejected load_from entry; the rest of the workspace still loads.
    index: int
    message: str

    def display(self) -> str:
        return f"load_from[{self.index}]: {self.message}"


@dataclass(frozen=True, slots=True)
class WorkspaceConfig:
    # Ordered, immutable origin list; replaced wholesale on reload.
    origins: tuple[LocationOrigin, ...]
    errors: tuple[ConfigEntryError, ...] = ()
    settings: HostSettings = field(default_factory=HostSettings)
    source_path: str | None = None

    def origin(self, origin_key: str) -> LocationOrigin | None:
        return next((item for item in self.origins if item.origin_key == origin_key), None)


def load_yaml_config(path: Path) -> dict[str, object]:
    # Raw YAML mapping for the workspace file.
    if not path.exists():
        raise WorkspaceFileNotFoundError(f"workspace file not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"workspace file is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw


def load_workspace_config(path: Path) -> WorkspaceConfig:
    resolved = Path(path).resolve()
    raw = load_yaml_config(resolved)
    config = workspace_config_from_mapping(raw, base_dir=resolved.parent)
    return WorkspaceConfig(
        origins=config.origins,
        errors=config.errors,
        settings=config.settings,
        source_path=str(resolved),
    )


def workspace_config_from_mapping(raw: dict[str, object], *, base_dir: Path) -> WorkspaceConfig:
    unknown = set(raw.keys()) - _ALLOWED_ROOT_KEYS
    if unknown:
        raise ConfigError(f"Unknown top-level keys: {sorted(unknown)}")

    settings = parse_host_settings(raw.get("settings"))

    entries = raw.get("load_from", [])
    if entries is None:
        entries = []
    if not isinstance(entries, list):
        raise ConfigError("load_from must be a list")

    origins: list[LocationOrigin] = []
    errors: list[ConfigEntryError] = []
    seen_keys: dict[str, int] = {}
    seen_names: dict[str, int] = {}
    for index, entry in enumerate(entries):
        try:
            origin = parse_location_entry(entry, base_dir=base_dir)
        except ConfigError as exc:
            errors.append(ConfigEntryError(index=index, message=str(exc)))
            continue
        # Duplicate policy: first entry wins, later duplicates are reported and skipped.
        first_index = seen_keys.get(origin.origin_key)
        if first_index is not None:
            errors.append(
                ConfigEntryError(index=index, message=f"duplicate origin of load_from[{first_index}]; skipped")
            )
            continue
        first_named = seen_names.get(origin.display_name)
        if first_named is not None:
            errors.append(
                ConfigEntryError(
                    index=index,
                    message=f"location name '{origin.display_name}' already used by load_from[{first_named}]; skipped",
                )
            )
            continue
        seen_keys[origin.origin_key] = index
        seen_names[origin.display_name] = index
        origins.append(origin)

    return WorkspaceConfig(origins=tuple(origins), errors=tuple(errors), settings=settings)


def parse_host_settings(raw: object) -> HostSettings:
    if raw is None:
        return HostSettings()
    if not isinstance(raw, dict):
        raise ConfigError("settings must be a mapping when provided")
    try:
        return HostSettings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"invalid settings: {_first_error(exc)}") from exc


def parse_location_entry(entry: object, *, base_dir: Path) -> LocationOrigin:
    if not isinstance(entry, dict) or len(entry) != 1:
        raise ConfigError(f"entry must be a mapping with exactly one of: {list(_ENTRY_KINDS)}")
    kind, body = next(iter(entry.items()))
    if kind not in _ENTRY_KINDS:
        raise ConfigError(f"unknown location kind {kind!r}; expected one of: {list(_ENTRY_KINDS)}")

    try:
        if kind == KIND_PYTHON_FILE:
            model = PythonFileEntry.model_validate({"relative_path": body} if isinstance(body, str) else body)
            working_directory = _resolve_dir(model.working_directory, base_dir)
            return PythonFileOrigin(
                path=str((base_dir / model.relative_path).resolve()),
                working_directory=working_directory,
                attribute=model.attribute,
                location_name=model.location_name,
            )
        if kind == KIND_PYTHON_MODULE:
            module = PythonModuleEntry.model_validate({"module_name": body} if isinstance(body, str) else body)
            return PythonModuleOrigin(
                module_name=module.module_name,
                working_directory=_resolve_dir(module.working_directory, base_dir),
                attribute=module.attribute,
                location_name=module.location_name,
            )
        server = GrpcServerEntry.model_validate(body)
        return GrpcServerOrigin(host=server.host, port=server.port, location_name=server.location_name)
    except ValidationError as exc:
        raise ConfigError(f"invalid {kind} entry: {_first_error(exc)}") from exc
    except OriginError as exc:
        raise ConfigError(f"invalid {kind} entry: {exc}") from exc


def single_location_config(
    *,
    python_file: str | None = None,
    python_module: str | None = None,
    attribute: str | None = None,
    working_directory: str | None = None,
    location_name: str | None = None,
    settings: HostSettings | None = None,
) -> WorkspaceConfig:
    # CLI convenience path (-f / -m): a one-entry workspace rooted at the current directory.
    if (python_file is None) == (python_module is None):
        raise ConfigError("exactly one of python_file or python_module is required")
    body: dict[str, object] = {}
    if attribute:
        body["attribute"] = attribute
    if working_directory:
        body["working_directory"] = working_directory
    if location_name:
        body["location_name"] = location_name
    if python_file is not None:
        entry = {KIND_PYTHON_FILE: {"relative_path": python_file, **body}}
    else:
        entry = {KIND_PYTHON_MODULE: {"module_name": python_module, **body}}
    origin = parse_location_entry(entry, base_dir=Path.cwd())
    return WorkspaceConfig(origins=(origin,), settings=settings or HostSettings())


def _resolve_dir(value: str | None, base_dir: Path) -> str:
    if value is None:
        return str(base_dir.resolve())
    return str((base_dir / value).resolve())


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else str(message)
