from dataclasses import dataclass
from typing import List


class DomainException(Exception):
    pass


class ValidationError(DomainException):
    pass


@dataclass(frozen=True)
class FieldViolation:
    field: str
    reason: str


class SchemaViolationError(ValidationError):
    def __init__(self, tool_name: str, violations: List[FieldViolation]):
        self.tool_name = tool_name
        self.violations = violations
        details = "; ".join(f"{v.field}: {v.reason}" for v in violations)
        super().__init__(f"Invalid arguments for {tool_name}: {details}")


class UnknownToolError(ValidationError):
    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}")


class NotFoundError(DomainException):
    pass


class ProductNotFoundError(NotFoundError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class CustomerNotFoundError(NotFoundError):
    pass


class PaymentNotFoundError(NotFoundError):
    pass


class ShopNotFoundError(NotFoundError):
    pass


class InsufficientStockError(DomainException):
    def __init__(self, available: int, required: int, product_name: str = ""):
        self.available = available
        self.required = required
        self.product_name = product_name
        subject = f" for {product_name}" if product_name else ""
        super().__init__(
            f"Not enough stock{subject}. Only {available} available, {required} requested."
        )


class InvalidTransitionError(DomainException):
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Order cannot move from {_value(current)} to {_value(target)}")


class SignatureVerificationError(DomainException):
    pass


class ExternalServiceError(DomainException):
    pass


class PaymentServiceError(ExternalServiceError):
    pass


class MessagingServiceError(ExternalServiceError):
    pass


class LanguageModelError(ExternalServiceError):
    pass


class NotificationServiceError(ExternalServiceError):
    pass


class InternalError(DomainException):
    def __init__(self, message: str = "Something went wrong on our side. Please try again later."):
        super().__init__(message)


def _value(status) -> str:
    return getattr(status, "value", str(status))
