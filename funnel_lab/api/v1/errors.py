from fastapi import HTTPException

from funnel_lab.core.errors import (
    ExperimentNotEditableError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceUnavailableError,
)


def http_error(error: Exception) -> HTTPException:
    """Map a service error onto the HTTP status callers expect."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (InvalidTransitionError, ExperimentNotEditableError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, PersistenceUnavailableError):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, ValueError):
        return HTTPException(status_code=422, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
