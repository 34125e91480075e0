import json
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ToolContext:
    """Кто вызывает инструмент: магазин и клиент текущего диалога"""
    shop_id: str
    customer_id: str


@dataclass
class ToolResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, message: str, data: Optional[Dict[str, Any]] = None) -> "ToolResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.message is not None:
            payload["message"] = self.message
        if self.error is not None:
            payload["error"] = self.error
        if self.data is not None:
            payload["data"] = self.data
        return payload

    def to_content(self) -> str:
        """Содержимое tool-сообщения для модели"""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


def format_amount(amount: int) -> str:
    return f"{amount:,}₮"
