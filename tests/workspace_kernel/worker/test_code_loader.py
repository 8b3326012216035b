from __future__ import annotations

import sys
from pathlib import Path

import pytest

from workspace_kernel.domain.errors import LocationErrorKind
from workspace_kernel.domain.origins import GrpcServerOrigin, PythonFileOrigin, PythonModuleOrigin
from workspace_kernel.worker.loader import CodeLoadError, load_code


def _write(path: Path, lines: list[str]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


_HEADER = "from workspace_kernel.definitions import JobDefinition, Repository, ScheduleDefinition"


def test_file_origin_with_single_repository(tmp_path: Path) -> None:
    # Entry point read from the declared attribute; no registry involved.
    path = _write(
        tmp_path / "defs.py",
        [
            _HEADER,
            "definitions = Repository(name='R', jobs=[JobDefinition(name='J')])",
        ],
    )
    repositories = load_code(PythonFileOrigin(path=str(path), working_directory=str(tmp_path)))
    assert [repo.name for repo in repositories] == ["R"]


def test_file_origin_with_factory_returning_list(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "factory_defs.py",
        [
            _HEADER,
            "def build():",
            "    return [Repository(name='A'), Repository(name='B')]",
        ],
    )
    repositories = load_code(PythonFileOrigin(path=str(path), attribute="build"))
    assert [repo.name for repo in repositories] == ["A", "B"]


def test_file_origin_can_import_siblings_from_working_directory(tmp_path: Path) -> None:
    # working_directory is put on sys.path inside the worker.
    _write(tmp_path / "helpers_for_loader.py", ["JOB_NAME = 'from_helper'"])
    path = _write(
        tmp_path / "uses_helper.py",
        [
            _HEADER,
            "from helpers_for_loader import JOB_NAME",
            "definitions = Repository(name='R', jobs=[JobDefinition(name=JOB_NAME)])",
        ],
    )
    repositories = load_code(PythonFileOrigin(path=str(path), working_directory=str(tmp_path)))
    assert repositories[0].jobs[0].name == "from_helper"


def test_import_time_exception_is_import_failure(tmp_path: Path) -> None:
    path = _write(tmp_path / "broken_import.py", ["import module_that_does_not_exist_anywhere"])
    with pytest.raises(CodeLoadError) as info:
        load_code(PythonFileOrigin(path=str(path)))
    assert info.value.error.kind is LocationErrorKind.IMPORT_FAILURE
    assert info.value.error.error_type == "ModuleNotFoundError"
    assert "module_that_does_not_exist_anywhere" in (info.value.error.traceback or "")


def test_syntax_error_is_import_failure(tmp_path: Path) -> None:
    path = _write(tmp_path / "syntax_broken.py", ["def broken(:"])
    with pytest.raises(CodeLoadError) as info:
        load_code(PythonFileOrigin(path=str(path)))
    assert info.value.error.kind is LocationErrorKind.IMPORT_FAILURE


def test_missing_file_is_import_failure(tmp_path: Path) -> None:
    with pytest.raises(CodeLoadError) as info:
        load_code(PythonFileOrigin(path=str(tmp_path / "absent.py")))
    assert info.value.error.kind is LocationErrorKind.IMPORT_FAILURE


def test_missing_entry_point_is_definition_error(tmp_path: Path) -> None:
    path = _write(tmp_path / "no_entry.py", ["value = 1"])
    with pytest.raises(CodeLoadError) as info:
        load_code(PythonFileOrigin(path=str(path)))
    assert info.value.error.kind is LocationErrorKind.DEFINITION_ERROR
    assert "definitions" in info.value.error.message


def test_wrong_entry_point_type_is_definition_error(tmp_path: Path) -> None:
    path = _write(tmp_path / "wrong_type.py", ["definitions = {'name': 'R'}"])
    with pytest.raises(CodeLoadError) as info:
        load_code(PythonFileOrigin(path=str(path)))
    assert info.value.error.kind is LocationErrorKind.DEFINITION_ERROR


def test_dangling_schedule_reference_is_definition_error(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "dangling.py",
        [
            _HEADER,
            "definitions = Repository(",
            "    name='R',",
            "    jobs=[JobDefinition(name='J')],",
            "    schedules=[ScheduleDefinition(name='S', job_name='missing', cron_schedule='0 0 * * *')],",
            ")",
        ],
    )
    with pytest.raises(CodeLoadError) as info:
        load_code(PythonFileOrigin(path=str(path)))
    assert info.value.error.kind is LocationErrorKind.DEFINITION_ERROR
    assert "missing" in info.value.error.message


def test_module_origin(tmp_path: Path) -> None:
    # Module origins import by dotted name from the working directory.
    _write(tmp_path / "loader_pkg" / "__init__.py", [])
    _write(
        tmp_path / "loader_pkg" / "defs.py",
        [_HEADER, "repos = [Repository(name='M', jobs=[JobDefinition(name='J')])]"],
    )
    try:
        repositories = load_code(
            PythonModuleOrigin(module_name="loader_pkg.defs", working_directory=str(tmp_path), attribute="repos")
        )
    finally:
        sys.modules.pop("loader_pkg.defs", None)
        sys.modules.pop("loader_pkg", None)
    assert [repo.name for repo in repositories] == ["M"]


def test_unknown_module_is_import_failure() -> None:
    with pytest.raises(CodeLoadError) as info:
        load_code(PythonModuleOrigin(module_name="no_such_package_for_loader_tests"))
    assert info.value.error.kind is LocationErrorKind.IMPORT_FAILURE


def test_remote_origin_cannot_be_loaded_in_process() -> None:
    with pytest.raises(CodeLoadError):
        load_code(GrpcServerOrigin(host="localhost", port=1))
