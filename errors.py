from typing import Any


class ReconciliationError(Exception):
    """Base typed error for the reconciliation service.

    Carries a stable `code` for clients and the HTTP status the transport
    reports it with.
    """

    def __init__(self, *, code: str, message: str, status_code: int = 500):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code

    def to_public_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class InvalidInput(ReconciliationError):
    def __init__(self, message: str = "Either email or phoneNumber must be provided"):
        super().__init__(code="request.invalid_input", message=message, status_code=400)


class StoreUnavailable(ReconciliationError):
    def __init__(self, message: str = "Contact store unavailable"):
        super().__init__(code="store.unavailable", message=message, status_code=500)


class IntegrityViolation(ReconciliationError):
    """Stored contacts break the one-primary flat-star invariant."""

    def __init__(self, message: str):
        super().__init__(code="internal.integrity_violation", message=message, status_code=500)
