"""Access-control error definitions for r2gate."""


class AccessControlError(Exception):
    """An access-control error with code, message, and HTTP status.

    Attributes:
        code: Machine-readable error code (e.g. "AccessDenied", "QuotaExceeded").
        message: Human-readable error description.
        http_status: The HTTP status code to return.
        extra: Additional key-value pairs to include in the JSON error body.
    """

    def __init__(
        self,
        code: str,
        message: str,
        http_status: int = 400,
        extra: dict[str, object] | None = None,
    ) -> None:
        """Initialize the error.

        Args:
            code: Error code.
            message: Error description.
            http_status: HTTP status code (default 400).
            extra: Optional extra fields for the response body.
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra or {}

    def to_dict(self) -> dict[str, object]:
        """Render the error as a JSON-serializable dict."""
        body: dict[str, object] = {"code": self.code, "message": self.message}
        body.update(self.extra)
        return body


# -- Caller errors -------------------------------------------------------------


class ValidationError(AccessControlError):
    """Malformed path, prefix, or configuration supplied by the caller."""

    def __init__(self, message: str = "Invalid Argument", **extra: object) -> None:
        super().__init__(code="InvalidArgument", message=message, http_status=400, extra=extra)


class MalformedGrantError(ValidationError):
    """A stored or submitted permission grant cannot be evaluated."""

    def __init__(self, message: str = "Malformed permission grant", **extra: object) -> None:
        super().__init__(message, **extra)
        self.code = "MalformedGrant"


class AuthenticationRequired(AccessControlError):
    """No caller identity or credentials were presented."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(code="Unauthorized", message=message, http_status=401)


class PermissionDenied(AccessControlError):
    """Authenticated but not authorized.

    The message never says which check failed.
    """

    def __init__(self, message: str = "Access Denied") -> None:
        super().__init__(code="AccessDenied", message=message, http_status=403)


class NotFoundError(AccessControlError):
    """No grant or token exists for the given identifier."""

    def __init__(self, message: str = "Not Found", **extra: object) -> None:
        super().__init__(code="NotFound", message=message, http_status=404, extra=extra)


class QuotaExceededError(AccessControlError):
    """A write would push storage bytes or file count past the ceiling.

    Attributes:
        resource: Either ``"storage"`` or ``"file_count"``.
    """

    def __init__(self, resource: str = "storage", message: str | None = None) -> None:
        if message is None:
            if resource == "file_count":
                message = "File count quota exceeded."
            else:
                message = "Storage quota exceeded."
        super().__init__(
            code="QuotaExceeded",
            message=message,
            http_status=413,
            extra={"resource": resource},
        )
        self.resource = resource


class ExpiredError(AccessControlError):
    """A grant or token is past its ``expires_at``."""

    def __init__(self, message: str = "Credential has expired.") -> None:
        super().__init__(code="Expired", message=message, http_status=403)


class ConflictError(AccessControlError):
    """A second active grant was requested for the same user."""

    def __init__(self, message: str = "An active access grant already exists.") -> None:
        super().__init__(code="Conflict", message=message, http_status=409)


# -- Backend errors ------------------------------------------------------------


class StoreError(AccessControlError):
    """An object-store operation failed.

    Attributes:
        operation: The gateway operation (e.g. "write", "read").
        path: The resource path that was being accessed.
        cause: The underlying exception, if any.
        retryable: True only for idempotent reads.
        timed_out: True if the call exceeded the configured timeout.
    """

    def __init__(
        self,
        operation: str,
        path: str,
        cause: BaseException | None = None,
        retryable: bool = False,
        timed_out: bool = False,
    ) -> None:
        reason = "timed out" if timed_out else (str(cause) if cause else "failed")
        super().__init__(
            code="StoreTimeout" if timed_out else "StoreError",
            message=f"Object store {operation} on {path} {reason}",
            http_status=504 if timed_out else 502,
            extra={"operation": operation, "path": path, "retryable": retryable},
        )
        self.operation = operation
        self.path = path
        self.cause = cause
        self.retryable = retryable
        self.timed_out = timed_out
