from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(ServiceError):
    """Rejected before any mutation; message is safe to show to the caller."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class InvalidAmount(ValidationError):
    pass


class UnknownFeeItem(ValidationError):
    pass


class AmountMismatch(ValidationError):
    pass


class InvalidTransition(ValidationError):
    pass


class NotFoundError(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND)


class ConflictError(ServiceError):
    """Concurrent-modification retries exhausted. Transient; the caller should retry."""

    def __init__(self, detail: str = "") -> None:
        super().__init__("The request could not be completed. Please try again.", status.HTTP_409_CONFLICT)
        self.detail = detail


class RateLimitedError(ServiceError):
    def __init__(self) -> None:
        super().__init__("Please wait before making another payment attempt", status.HTTP_429_TOO_MANY_REQUESTS)


class GatewayError(ServiceError):
    """External gateway failure. `detail` is for logs only, never for the caller."""

    public_message = "Payment gateway error. Please try again."

    def __init__(self, detail: str = "", status_code: int = status.HTTP_502_BAD_GATEWAY) -> None:
        super().__init__(self.public_message, status_code)
        self.detail = detail


class InvalidSignature(GatewayError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(detail, status.HTTP_400_BAD_REQUEST)


class UnknownTransaction(GatewayError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(detail, status.HTTP_404_NOT_FOUND)


class UnsupportedGateway(GatewayError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(detail, status.HTTP_400_BAD_REQUEST)
