from fastapi import HTTPException, status

from ..services import errors

# purpose: single mapping from engine error kinds onto HTTP responses
# status: active

_STATUS_BY_ERROR = (
    (errors.ReferenceNotFound, status.HTTP_404_NOT_FOUND),
    (errors.ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (errors.ConflictError, status.HTTP_409_CONFLICT),
    (errors.PermissionDenied, status.HTTP_403_FORBIDDEN),
    (errors.RepositoryError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(exc: errors.ProcessEngineError) -> HTTPException:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
