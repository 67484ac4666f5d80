# app/services/message_client.py
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ..config import get_settings
from ..schemas.message import Direction, MessageId, MessageOut

logger = logging.getLogger(__name__)


class MessageClient:
    """Cliente HTTP del API de mensajes (/messages) para un usuario autenticado."""

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout or settings.http_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "MessageClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        r = await self._client.request(method, path, **kwargs)
        r.raise_for_status()
        return r

    @staticmethod
    def _json(r: httpx.Response, expected: type) -> Any:
        # Un cuerpo que no es JSON del tipo esperado (p.ej. HTML de un proxy) se
        # reporta como error HTTP para que el llamador lo trate como fallo de red
        try:
            data = r.json()
        except ValueError as e:
            raise httpx.DecodingError(f"Invalid JSON from {r.request.url}: {e}", request=r.request) from e
        if not isinstance(data, expected):
            raise httpx.DecodingError(
                f"Expected {expected.__name__} from {r.request.url}, got {type(data).__name__}",
                request=r.request,
            )
        return data

    async def list_messages(self, direction: Direction, partner_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"type": direction}
        if partner_id:
            params["partner_id"] = partner_id
        r = await self._request("GET", "/messages", params=params)
        return self._json(r, list)

    async def send_message(self, receiver_id: str, content: str, subject: str = "") -> MessageOut:
        r = await self._request(
            "POST", "/messages",
            json={"receiver_id": receiver_id, "subject": subject, "content": content},
        )
        try:
            return MessageOut.model_validate(self._json(r, dict))
        except ValidationError as e:
            raise httpx.DecodingError(f"Invalid message payload: {e}", request=r.request) from e

    async def mark_read(self, message_id: MessageId) -> None:
        await self._request("PUT", f"/messages/{message_id}/read")

    async def unread_count(self) -> int:
        r = await self._request("GET", "/messages/unread-count")
        count = self._json(r, dict).get("count", 0)
        if not isinstance(count, int):
            raise httpx.DecodingError(f"Invalid unread count: {count!r}", request=r.request)
        return count

    async def delete_message(self, message_id: MessageId) -> None:
        await self._request("DELETE", f"/messages/{message_id}")
