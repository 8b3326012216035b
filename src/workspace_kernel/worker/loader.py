from __future__ import annotations

import importlib
import importlib.util
import sys
import traceback
from pathlib import Path
from types import ModuleType

from workspace_kernel.domain.definitions import Repository, validate_repositories
from workspace_kernel.domain.errors import DefinitionGraphError, LocationError, LocationErrorKind
from workspace_kernel.domain.origins import LocationOrigin, PythonFileOrigin, PythonModuleOrigin


class CodeLoadError(RuntimeError):
    # User code could not be turned into a repository graph; carries the classified LocationError.
    def __init__(self, error: LocationError) -> None:
        super().__init__(error.display())
        self.error = error


def load_code(origin: LocationOrigin) -> tuple[Repository, ...]:
    # Import the origin and read its single entry point; no registry is consulted.
    if isinstance(origin, PythonFileOrigin):
        module = _import_file(origin)
    elif isinstance(origin, PythonModuleOrigin):
        module = _import_module(origin)
    else:
        raise CodeLoadError(
            LocationError(
                kind=LocationErrorKind.DEFINITION_ERROR,
                message=f"origin kind '{origin.kind}' cannot be loaded in-process",
            )
        )

    if not hasattr(module, origin.attribute):
        raise CodeLoadError(
            LocationError(
                kind=LocationErrorKind.DEFINITION_ERROR,
                message=f"entry point '{origin.attribute}' not found in {module.__name__}",
            )
        )
    entry = getattr(module, origin.attribute)
    if callable(entry) and not isinstance(entry, Repository):
        try:
            entry = entry()
        except Exception as exc:  # noqa: BLE001 - user factory failure is reported as a definition error.
            raise CodeLoadError(_from_exception(LocationErrorKind.DEFINITION_ERROR, exc)) from exc

    repositories = _as_repositories(entry, origin.attribute)
    try:
        return validate_repositories(repositories)
    except DefinitionGraphError as exc:
        raise CodeLoadError(_from_exception(LocationErrorKind.DEFINITION_ERROR, exc)) from exc


def _import_file(origin: PythonFileOrigin) -> ModuleType:
    path = Path(origin.path)
    if not path.is_file():
        raise CodeLoadError(
            LocationError(
                kind=LocationErrorKind.IMPORT_FAILURE,
                message=f"python file not found: {path}",
                error_type="FileNotFoundError",
            )
        )
    _prepend_sys_path(origin.working_directory or str(path.parent))
    module_name = f"workspace_location_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise CodeLoadError(
            LocationError(kind=LocationErrorKind.IMPORT_FAILURE, message=f"cannot build import spec for {path}")
        )
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:  # noqa: BLE001 - any import-time exception is an import failure.
        sys.modules.pop(module_name, None)
        raise CodeLoadError(_from_exception(LocationErrorKind.IMPORT_FAILURE, exc)) from exc
    return module


def _import_module(origin: PythonModuleOrigin) -> ModuleType:
    if origin.working_directory:
        _prepend_sys_path(origin.working_directory)
    try:
        return importlib.import_module(origin.module_name)
    except Exception as exc:  # noqa: BLE001 - any import-time exception is an import failure.
        raise CodeLoadError(_from_exception(LocationErrorKind.IMPORT_FAILURE, exc)) from exc


def _as_repositories(entry: object, attribute: str) -> list[Repository]:
    if isinstance(entry, Repository):
        return [entry]
    if isinstance(entry, (list, tuple)) and entry and all(isinstance(item, Repository) for item in entry):
        return list(entry)
    raise CodeLoadError(
        LocationError(
            kind=LocationErrorKind.DEFINITION_ERROR,
            message=(
                f"entry point '{attribute}' must be a Repository, a non-empty list of Repository, "
                f"or a callable returning one; got {type(entry).__name__}"
            ),
        )
    )


def _prepend_sys_path(directory: str) -> None:
    if directory not in sys.path:
        sys.path.insert(0, directory)


def _from_exception(kind: LocationErrorKind, exc: BaseException) -> LocationError:
    return LocationError(
        kind=kind,
        message=f"{type(exc).__name__}: {exc}",
        error_type=type(exc).__name__,
        traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    )
