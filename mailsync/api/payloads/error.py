from typing import Any

from pydantic import BaseModel


class APIError(BaseModel):
    """Error body rendered for every BaseError."""

    error: str
    error_description: str | None = None
    details: dict[str, Any] | None = None
