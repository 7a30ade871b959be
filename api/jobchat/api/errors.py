from fastapi import HTTPException, status

from jobchat.services.errors import StoreError


def store_http_error(exc: StoreError) -> HTTPException:
    """503 for failures worth retrying, 400 for requests the store rejected outright."""

    code = status.HTTP_503_SERVICE_UNAVAILABLE if exc.retryable else status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(exc))
