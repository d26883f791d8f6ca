import enum
from http import HTTPStatus
from typing import Any


class ErrorType(enum.Enum):
    ACCOUNT_INACTIVE = "account_inactive"
    AUTH_EXPIRED = "auth_expired"
    ENTITY_ALREADY_EXISTS = "entity_already_exists"
    ENTITY_NOT_FOUND = "entity_not_found"
    FORBIDDEN = "forbidden"
    INTERNAL_ERROR = "internal_error"
    INVALID_DATA = "invalid_data"
    PROTOCOL_ERROR = "protocol_error"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SEND_OUTCOME_UNKNOWN = "send_outcome_unknown"
    SPAM_SCORE_TOO_HIGH = "spam_score_too_high"
    TRANSIENT_NETWORK = "transient_network"
    UNHANDLED_EXCEPTION = "unhandled_exception"
    UNAUTHORIZED_USER = "unauthorized_user"
    UNSPECIFIED = "unspecified"


class BaseError(Exception):
    extra: dict[str, Any]
    details: dict[str, Any]

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNSPECIFIED,
        status_code: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR,
        **kwargs: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.extra = {}
        self.details = dict(kwargs.get("details") or {})

        for key in ("action", "user", "account_id", "provider"):
            value = kwargs.get(key)
            if value:
                self.extra[key] = value

    def __str__(self) -> str:
        return f"error: {self.error_type.value}; description: {self.message}"


class AuthError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNAUTHORIZED_USER,
        status_code: HTTPStatus = HTTPStatus.UNAUTHORIZED,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class ActionForbiddenError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.FORBIDDEN,
        status_code: HTTPStatus = HTTPStatus.FORBIDDEN,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class EntityAlreadyExistError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.ENTITY_ALREADY_EXISTS,
        status_code: HTTPStatus = HTTPStatus.CONFLICT,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class EntityNotFoundError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.ENTITY_NOT_FOUND,
        status_code: HTTPStatus = HTTPStatus.NOT_FOUND,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class InvalidDataError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INVALID_DATA,
        status_code: HTTPStatus = HTTPStatus.BAD_REQUEST,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class InternalError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INTERNAL_ERROR,
        status_code: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class AccountInactiveError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.ACCOUNT_INACTIVE,
        status_code: HTTPStatus = HTTPStatus.CONFLICT,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class ProtocolError(BaseError):
    """Base for failures reported by a mailbox provider."""


class AuthExpiredError(ProtocolError):
    """The provider rejected the credential. Recoverable by one refresh."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.AUTH_EXPIRED,
        status_code: HTTPStatus = HTTPStatus.UNAUTHORIZED,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class TransientNetworkError(ProtocolError):
    """Timeouts, dropped connections, throttling. Retried through backoff."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.TRANSIENT_NETWORK,
        status_code: HTTPStatus = HTTPStatus.SERVICE_UNAVAILABLE,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class PermanentProtocolError(ProtocolError):
    """A malformed or rejected response that will not succeed on retry."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.PROTOCOL_ERROR,
        status_code: HTTPStatus = HTTPStatus.BAD_GATEWAY,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class RateLimitExceededError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.RATE_LIMIT_EXCEEDED,
        status_code: HTTPStatus = HTTPStatus.TOO_MANY_REQUESTS,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class SpamScoreTooHighError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.SPAM_SCORE_TOO_HIGH,
        status_code: HTTPStatus = HTTPStatus.UNPROCESSABLE_ENTITY,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class SendOutcomeUnknownError(BaseError):
    """The send was interrupted after it may have reached the provider."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.SEND_OUTCOME_UNKNOWN,
        status_code: HTTPStatus = HTTPStatus.GATEWAY_TIMEOUT,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)
