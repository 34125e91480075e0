"""Каталог инструментов для модели и валидация их аргументов.

Единственный источник правды: имя инструмента -> pydantic-модель аргументов.
validate() возвращает типизированные аргументы или бросает
SchemaViolationError / UnknownToolError, до обработчиков некорректный вывод
модели не доходит.
"""
import json
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from shopbot.domain.exceptions import FieldViolation, SchemaViolationError, UnknownToolError


class ToolArgs(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore", frozen=True)

    tool_name: ClassVar[str] = ""


class CreateOrderArgs(ToolArgs):
    tool_name: ClassVar[str] = "create_order"

    product_name: str = Field(min_length=1, max_length=200, description="Name of the product to order (fuzzy match)")
    quantity: int = Field(default=1, gt=0, le=100, description="Quantity to order")
    color: Optional[str] = Field(default=None, max_length=50, description="Selected color variant")
    size: Optional[str] = Field(default=None, max_length=20, description="Selected size variant")

    def variant_specs(self) -> Dict[str, str]:
        return _variant(self.color, self.size)


class AddToCartArgs(ToolArgs):
    tool_name: ClassVar[str] = "add_to_cart"

    product_name: str = Field(min_length=1, max_length=200, description="Name of the product to add (fuzzy match)")
    quantity: int = Field(default=1, gt=0, le=50, description="Quantity to add")
    color: Optional[str] = Field(default=None, max_length=50, description="Color variant")
    size: Optional[str] = Field(default=None, max_length=20, description="Size variant")

    def variant_specs(self) -> Dict[str, str]:
        return _variant(self.color, self.size)


class RemoveFromCartArgs(ToolArgs):
    tool_name: ClassVar[str] = "remove_from_cart"

    product_name: str = Field(min_length=1, max_length=200, description="Name of the product to remove")


class ViewCartArgs(ToolArgs):
    tool_name: ClassVar[str] = "view_cart"


class CheckoutArgs(ToolArgs):
    tool_name: ClassVar[str] = "checkout"

    notes: Optional[str] = Field(default=None, max_length=1000, description="Any special notes for the order")


class CollectContactInfoArgs(ToolArgs):
    tool_name: ClassVar[str] = "collect_contact_info"

    phone: Optional[str] = Field(default=None, pattern=r"^\d{8}$", description="Customer phone number (8 digits)")
    address: Optional[str] = Field(default=None, min_length=5, max_length=500, description="Delivery address")
    name: Optional[str] = Field(default=None, min_length=2, max_length=100, description="Customer name")

    @model_validator(mode="after")
    def _at_least_one(self):
        if not (self.phone or self.address or self.name):
            raise ValueError("At least one contact field is required")
        return self

    def fields(self) -> Dict[str, str]:
        return {k: v for k, v in (("phone", self.phone), ("address", self.address), ("name", self.name)) if v}


class RequestHumanSupportArgs(ToolArgs):
    tool_name: ClassVar[str] = "request_human_support"

    reason: str = Field(min_length=1, max_length=500, description="Reason for requesting human support")


class RememberPreferenceArgs(ToolArgs):
    tool_name: ClassVar[str] = "remember_preference"

    key: str = Field(min_length=1, max_length=50, description="Preference kind: size, color, style, budget")
    value: str = Field(min_length=1, max_length=200, description="Value to remember")


class CancelOrderArgs(ToolArgs):
    tool_name: ClassVar[str] = "cancel_order"

    reason: Optional[str] = Field(default=None, max_length=500, description="Reason for cancellation")


class ShowProductImageArgs(ToolArgs):
    tool_name: ClassVar[str] = "show_product_image"

    product_names: List[str] = Field(min_length=1, max_length=5, description="Exact names of 1-5 products to show")
    mode: Literal["single", "confirm"] = Field(
        description='"single" for one product, "confirm" to let the customer choose between similar products'
    )

    @model_validator(mode="after")
    def _non_empty_names(self):
        if any(not name.strip() for name in self.product_names):
            raise ValueError("Product names must not be empty")
        return self


class CheckOrderStatusArgs(ToolArgs):
    tool_name: ClassVar[str] = "check_order_status"

    order_id: Optional[str] = Field(default=None, max_length=64, description="Specific order ID if known")


class CheckPaymentStatusArgs(ToolArgs):
    tool_name: ClassVar[str] = "check_payment_status"

    order_id: Optional[str] = Field(default=None, max_length=64, description="Order ID to check, if known")


ValidatedArgs = Union[
    CreateOrderArgs, AddToCartArgs, RemoveFromCartArgs, ViewCartArgs, CheckoutArgs,
    CollectContactInfoArgs, RequestHumanSupportArgs, RememberPreferenceArgs,
    CancelOrderArgs, ShowProductImageArgs, CheckOrderStatusArgs, CheckPaymentStatusArgs,
]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: Type[ToolArgs]

    def to_function_schema(self) -> Dict[str, Any]:
        """Описание в формате function calling (OpenAI-совместимое)"""
        schema = self.args_model.model_json_schema()
        parameters = {
            "type": "object",
            "properties": schema.get("properties", {}),
            "required": schema.get("required", []),
        }
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": parameters},
        }


_SPECS = [
    ToolSpec(
        "create_order",
        "Create a new order when the customer explicitly says they want to buy something. "
        "Do not use for general inquiries.",
        CreateOrderArgs,
    ),
    ToolSpec(
        "add_to_cart",
        "Add a product to the shopping cart. Use this first when the customer wants to buy something, "
        "then ask to confirm checkout.",
        AddToCartArgs,
    ),
    ToolSpec("remove_from_cart", "Remove an item from the cart.", RemoveFromCartArgs),
    ToolSpec("view_cart", "Show current shopping cart contents and total.", ViewCartArgs),
    ToolSpec(
        "checkout",
        "Finalize the cart and create an order. Use when the customer confirms the purchase.",
        CheckoutArgs,
    ),
    ToolSpec(
        "collect_contact_info",
        "Save customer contact information when they share a phone number, delivery address or name.",
        CollectContactInfoArgs,
    ),
    ToolSpec(
        "request_human_support",
        "Call when the customer asks to speak to a human operator or when you cannot help them.",
        RequestHumanSupportArgs,
    ),
    ToolSpec(
        "remember_preference",
        "Remember a customer preference such as size, color, style or budget.",
        RememberPreferenceArgs,
    ),
    ToolSpec(
        "cancel_order",
        "Cancel the customer's active order when they explicitly ask to cancel. Restores reserved stock.",
        CancelOrderArgs,
    ),
    ToolSpec(
        "show_product_image",
        "Show product image(s) only when the customer asks about a specific product. "
        'Use "confirm" mode when 2-5 similar products match.',
        ShowProductImageArgs,
    ),
    ToolSpec(
        "check_order_status",
        "Check the status of the customer's recent orders.",
        CheckOrderStatusArgs,
    ),
    ToolSpec(
        "check_payment_status",
        "Check payment status when the customer says they have paid but it is not confirmed yet.",
        CheckPaymentStatusArgs,
    ),
]

TOOL_CATALOG: Dict[str, ToolSpec] = {spec.name: spec for spec in _SPECS}


def tool_definitions() -> List[Dict[str, Any]]:
    return [spec.to_function_schema() for spec in TOOL_CATALOG.values()]


def validate(name: str, raw_args: Union[str, Dict[str, Any], None]) -> ValidatedArgs:
    """Проверяет аргументы вызова инструмента, без побочных эффектов"""
    spec = TOOL_CATALOG.get(name)
    if spec is None:
        raise UnknownToolError(name)

    if raw_args is None or raw_args == "":
        payload: Any = {}
    elif isinstance(raw_args, str):
        try:
            payload = json.loads(raw_args)
        except json.JSONDecodeError:
            raise SchemaViolationError(name, [FieldViolation("arguments", "Arguments are not valid JSON")])
    else:
        payload = raw_args

    if not isinstance(payload, dict):
        raise SchemaViolationError(name, [FieldViolation("arguments", "Arguments must be a JSON object")])

    try:
        return spec.args_model.model_validate(payload)
    except PydanticValidationError as e:
        raise SchemaViolationError(name, [_to_violation(error) for error in e.errors()])


def _to_violation(error: Dict[str, Any]) -> FieldViolation:
    field = ".".join(str(part) for part in error.get("loc", ())) or "arguments"
    reason = error.get("msg", "invalid value")
    # model_validator: "Value error, ..."
    if reason.startswith("Value error, "):
        reason = reason[len("Value error, "):]
    return FieldViolation(field, reason)


def _variant(color: Optional[str], size: Optional[str]) -> Dict[str, str]:
    specs = {}
    if color:
        specs["color"] = color
    if size:
        specs["size"] = size
    return specs
