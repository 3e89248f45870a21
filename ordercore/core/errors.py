class DomainError(Exception):
    status_code = 400
    code = "domain_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def context(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": self.code, **self.context()}

class ValidationError(DomainError):
    status_code = 400
    code = "validation_error"

class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"

class EmptyCartError(DomainError):
    status_code = 400
    code = "empty_cart"

    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)

class InsufficientStockError(DomainError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, product_id: int, product_name: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for {product_name}. Only {available} available"
        )
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.available = available

    def context(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "requested": self.requested,
            "available": self.available,
        }

class InvalidStatusError(DomainError):
    status_code = 400
    code = "invalid_status"

    def __init__(self, value, allowed):
        super().__init__(f"Invalid status '{value}'. Must be one of: {', '.join(allowed)}")
        self.value = value
        self.allowed = list(allowed)

    def context(self) -> dict:
        return {"allowed": self.allowed}

class IllegalTransitionError(DomainError):
    status_code = 409
    code = "illegal_transition"

    def __init__(self, current: str, requested: str, message: str | None = None):
        super().__init__(message or f"Cannot change status from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested

    def context(self) -> dict:
        return {"current": self.current, "requested": self.requested}

class ConflictError(DomainError):
    status_code = 409
    code = "conflict"

class ExternalProviderError(DomainError):
    status_code = 502
    code = "provider_error"

    def __init__(self, provider: str, message: str):
        super().__init__(message)
        self.provider = provider

    def context(self) -> dict:
        return {"provider": self.provider}
