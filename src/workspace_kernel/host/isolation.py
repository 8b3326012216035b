from __future__ import annotations

import traceback
from collections.abc import Iterator
from contextlib import contextmanager

from workspace_kernel.domain.errors import (
    DefinitionGraphError,
    LocationError,
    LocationErrorKind,
    LocationFault,
)
from workspace_kernel.protocol.messages import ProtocolError
from workspace_kernel.worker.loader import CodeLoadError


class RequestRejectedError(LookupError):
    # Worker answered, but the request referenced a repository/definition it does not have.
    pass


def classify_exception(exc: BaseException, *, location_name: str | None = None) -> LocationError | None:
    # Map transport/load failures onto the LocationError taxonomy; None means "not a location failure".
    if isinstance(exc, LocationFault):
        error = exc.error
    elif isinstance(exc, CodeLoadError):
        error = exc.error
    elif isinstance(exc, TimeoutError):
        error = _error(LocationErrorKind.TIMEOUT, exc)
    elif isinstance(exc, (DefinitionGraphError, RequestRejectedError)):
        error = _error(LocationErrorKind.DEFINITION_ERROR, exc)
    elif isinstance(exc, (ProtocolError, ConnectionError, EOFError, OSError)):
        error = _error(LocationErrorKind.CONNECTION_LOST, exc)
    else:
        return None
    if location_name is not None and error.location_name is None:
        return error.for_location(location_name)
    return error


@contextmanager
def isolate(location_name: str | None = None) -> Iterator[None]:
    # Re-raise any classifiable failure as a LocationFault; defects propagate unchanged.
    try:
        yield
    except LocationFault as exc:
        if location_name is not None and exc.error.location_name is None:
            raise LocationFault(exc.error.for_location(location_name)) from exc
        raise
    except Exception as exc:
        error = classify_exception(exc, location_name=location_name)
        if error is None:
            raise
        raise LocationFault(error) from exc


def process_terminated(location_name: str | None, exitcode: int | None) -> LocationError:
    detail = f" (exit code {exitcode})" if exitcode is not None else ""
    return LocationError(
        kind=LocationErrorKind.CONNECTION_LOST,
        message=f"process terminated{detail}",
        error_type="ProcessTerminated",
        location_name=location_name,
    )


def _error(kind: LocationErrorKind, exc: BaseException) -> LocationError:
    text = str(exc) or type(exc).__name__
    return LocationError(
        kind=kind,
        message=text,
        error_type=type(exc).__name__,
        traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    )


def unexpected_failure(exc: BaseException, *, location_name: str | None = None) -> LocationError:
    # Unclassified exception at a load boundary; recorded on the origin instead of escaping the workspace.
    error = _error(LocationErrorKind.CONNECTION_LOST, exc)
    return LocationError(
        kind=error.kind,
        message=f"unexpected load failure: {error.message}",
        error_type=error.error_type,
        traceback=error.traceback,
        location_name=location_name,
    )
