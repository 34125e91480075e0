import httpx
import logging
import time
from typing import Any, Dict, Optional

from shopbot.application.interfaces import MessagingService, PaymentGateway, ShopNotificationsService
from shopbot.domain.exceptions import MessagingServiceError, NotificationServiceError, PaymentServiceError

logger = logging.getLogger(__name__)

# запас до истечения токена QPay, секунды
TOKEN_EXPIRY_MARGIN = 60


class QPayClient(PaymentGateway):
    """QPay merchant API v2: OAuth-токен, выставление и проверка счетов"""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        invoice_code: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0
    ):
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._invoice_code = invoice_code
        self._transport = transport
        self._timeout = timeout
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self._invoice_code)

    async def create_invoice(self, order_id: str, amount: int, description: str, callback_url: str) -> Dict[str, Any]:
        if not self.is_configured:
            # без ключей QPay (локальная разработка) счет фиктивный
            logger.warning(f"QPay не настроен, фиктивный счет для заказа {order_id}")
            return {
                "invoice_id": f"MOCK_INV_{order_id}",
                "qr_text": f"https://qpay.mn/mock/{order_id}",
                "short_url": f"https://qpay.mn/m/{order_id}"
            }

        data = await self._post(
            "/invoice",
            {
                "invoice_code": self._invoice_code,
                "sender_invoice_no": order_id,
                "invoice_receiver_code": "terminal",
                "invoice_description": description,
                "amount": amount,
                "callback_url": callback_url
            }
        )
        if not isinstance(data, dict) or not data.get("invoice_id"):
            raise PaymentServiceError("QPay: в ответе нет invoice_id")
        logger.info(f"QPay счет {data.get('invoice_id')} создан для заказа {order_id}")
        return {
            "invoice_id": data["invoice_id"],
            "qr_text": data.get("qr_text"),
            "short_url": data.get("qPay_shortUrl") or data.get("qpay_shorturl")
        }

    async def check_status(self, invoice_id: str) -> Dict[str, Any]:
        if not self.is_configured:
            return {"count": 0, "paid_amount": 0, "rows": []}

        data = await self._post(
            "/payment/check",
            {"object_type": "INVOICE", "object_id": invoice_id, "offset": {"page_number": 1, "page_limit": 100}}
        )
        logger.info(f"QPay проверка счета {invoice_id}: count={data.get('count')}, paid={data.get('paid_amount')}")
        return {
            "count": data.get("count", 0),
            "paid_amount": data.get("paid_amount", 0),
            "rows": data.get("rows", [])
        }

    async def _post(self, path: str, payload: dict) -> dict:
        token = await self._get_token()
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}{path}",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self._timeout
                )
        except httpx.RequestError as e:
            logger.error(f"QPay ошибка подключения: {e}")
            raise PaymentServiceError(f"QPay не доступен: {str(e)}")

        if response.status_code == 401:
            # токен отозван раньше срока
            self._token = None
        if response.status_code not in (200, 201):
            raise PaymentServiceError(f"QPay ошибка: {response.status_code}")
        try:
            return response.json()
        except ValueError:
            raise PaymentServiceError(f"QPay вернул не JSON: {response.text[:200]}")

    async def _get_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}/auth/token",
                    auth=(self._client_id, self._client_secret),
                    timeout=self._timeout
                )
        except httpx.RequestError as e:
            logger.error(f"QPay auth ошибка подключения: {e}")
            raise PaymentServiceError(f"QPay не доступен: {str(e)}")

        if response.status_code != 200:
            raise PaymentServiceError(f"QPay auth ошибка: {response.status_code}")

        try:
            data = response.json()
            self._token = data["access_token"]
        except (ValueError, KeyError, TypeError):
            raise PaymentServiceError("QPay auth: в ответе нет access_token")
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - TOKEN_EXPIRY_MARGIN, 0)
        logger.info("Получен токен QPay")
        return self._token


class MessengerClient(MessagingService):
    """Facebook Messenger Send API"""

    def __init__(self, graph_url: str, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 10.0):
        self._graph_url = graph_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    async def send_text(self, recipient_id: str, text: str, access_token: str) -> None:
        await self._send(
            {"recipient": {"id": recipient_id}, "message": {"text": text}, "messaging_type": "RESPONSE"},
            access_token
        )

    async def send_tagged_message(self, recipient_id: str, text: str, tag: str, access_token: str) -> None:
        await self._send(
            {
                "recipient": {"id": recipient_id},
                "message": {"text": text},
                "messaging_type": "MESSAGE_TAG",
                "tag": tag
            },
            access_token
        )

    async def _send(self, payload: dict, access_token: str) -> None:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    f"{self._graph_url}/me/messages",
                    params={"access_token": access_token},
                    json=payload,
                    timeout=self._timeout
                )
        except httpx.RequestError as e:
            logger.error(f"Messenger ошибка подключения: {e}")
            raise MessagingServiceError(f"Messenger не доступен: {str(e)}")

        if response.status_code != 200:
            raise MessagingServiceError(f"Messenger ошибка: {response.status_code} {response.text[:200]}")
        logger.info(f"Сообщение отправлено получателю {payload['recipient']['id']}")


class HTTPNotificationsClient(ShopNotificationsService):
    """Push-уведомления владельцу магазина через сервис уведомлений"""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0
    ):
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._transport = transport
        self._timeout = timeout

    async def send(self, shop_id: str, title: str, body: str, tag: str) -> None:
        if not self._base_url:
            logger.info(f"Сервис уведомлений не настроен, '{title}' для магазина {shop_id} не отправлено")
            return

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}/api/notifications",
                    json={"shop_id": shop_id, "title": title, "body": body, "tag": tag},
                    headers={"X-API-Key": self._api_token},
                    timeout=self._timeout
                )
        except httpx.RequestError as e:
            raise NotificationServiceError(f"Notifications service не доступен: {str(e)}")

        if response.status_code not in (200, 201, 202):
            raise NotificationServiceError(f"Notifications service ошибка: {response.status_code}")
        logger.info(f"Уведомление '{title}' отправлено магазину {shop_id}")
