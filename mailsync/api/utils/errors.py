from fastapi.responses import JSONResponse

from mailsync.api.payloads.error import APIError
from mailsync.exceptions import BaseError


def create_error_response(exc: BaseError) -> JSONResponse:
    """
    Render a BaseError as the API error body.

    Args:
        exc: The raised application error

    Returns:
        JSONResponse with `error`, `error_description` and, when present, `details`
    """
    error_response = APIError(
        error=exc.error_type.value, error_description=exc.message, details=exc.details or None
    )
    return JSONResponse(
        status_code=int(exc.status_code), content=error_response.model_dump(mode="json", exclude_none=True)
    )
