from __future__ import annotations

import pytest

from workspace_kernel.domain.errors import DefinitionGraphError, LocationError, LocationErrorKind, LocationFault
from workspace_kernel.host.isolation import (
    RequestRejectedError,
    classify_exception,
    isolate,
    process_terminated,
)
from workspace_kernel.protocol.messages import ProtocolError
from workspace_kernel.worker.loader import CodeLoadError


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (TimeoutError("late"), LocationErrorKind.TIMEOUT),
        (ConnectionResetError("reset"), LocationErrorKind.CONNECTION_LOST),
        (EOFError(), LocationErrorKind.CONNECTION_LOST),
        (BrokenPipeError("pipe"), LocationErrorKind.CONNECTION_LOST),
        (ProtocolError("bad frame"), LocationErrorKind.CONNECTION_LOST),
        (DefinitionGraphError("dangling"), LocationErrorKind.DEFINITION_ERROR),
        (RequestRejectedError("unknown repo"), LocationErrorKind.DEFINITION_ERROR),
    ],
)
def test_classify_exception(exc: BaseException, kind: LocationErrorKind) -> None:
    error = classify_exception(exc, location_name="loc")
    assert error is not None
    assert error.kind is kind
    assert error.location_name == "loc"
    assert error.error_type == type(exc).__name__
    assert error.message


def test_carriers_keep_their_error() -> None:
    original = LocationError(kind=LocationErrorKind.IMPORT_FAILURE, message="no module")
    assert classify_exception(CodeLoadError(original)) == original
    assert classify_exception(LocationFault(original), location_name="x").location_name == "x"


def test_defects_are_not_classified() -> None:
    # Host-side bugs are not location failures and must surface unchanged.
    assert classify_exception(KeyError("k")) is None
    with pytest.raises(KeyError):
        with isolate("loc"):
            raise KeyError("k")


def test_isolate_converts_and_tags() -> None:
    with pytest.raises(LocationFault) as info:
        with isolate("loc"):
            raise TimeoutError("no reply")
    assert info.value.error.kind is LocationErrorKind.TIMEOUT
    assert info.value.error.location_name == "loc"
    assert isinstance(info.value.__cause__, TimeoutError)

    tagged = LocationError(kind=LocationErrorKind.TIMEOUT, message="x", location_name="other")
    with pytest.raises(LocationFault) as info:
        with isolate("loc"):
            raise LocationFault(tagged)
    assert info.value.error.location_name == "other"


def test_process_terminated_error() -> None:
    error = process_terminated("loc", -9)
    assert error.kind is LocationErrorKind.CONNECTION_LOST
    assert error.display() == "[loc] connection_lost: process terminated (exit code -9)"
    assert process_terminated(None, None).message == "process terminated"
