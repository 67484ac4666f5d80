# app/services/poller.py
"""
Refresco periódico de la mensajería desde el lado cliente.

Dos bucles independientes, cancelables:
- lista de conversaciones + contador de no leídos (intervalo largo), siempre activo;
- conversación abierta (intervalo corto), sólo mientras hay una abierta. Se
  cancela y se relanza al cambiar de conversación.

Cada tick lanza su refresco como tarea propia, de modo que un fetch lento no
retrasa el siguiente tick. Los resultados de un refresco cuyo interlocutor ya
no es el abierto se descartan.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set

import httpx

from ..config import get_settings
from ..schemas.message import MessageId, MessageOut
from .conversations import (
    Conversation,
    RefreshResult,
    ViewerContext,
    build_conversations,
    coerce_messages,
    mark_read_locally,
    partner_of,
    refresh_conversation,
    sort_messages,
    unread_total,
)

logger = logging.getLogger(__name__)

NewMessagesCallback = Callable[[str, List[MessageOut]], None]


class MessagingError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class SendError(MessagingError):
    """El envío falló: no se añade nada al estado local y el texto se conserva."""

    def __init__(self, message: str, content: str = "", status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.content = content


def _status_of(exc: httpx.HTTPError) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


class ConversationPoller:
    def __init__(
        self,
        client,
        current_user_id: str,
        list_interval: Optional[float] = None,
        active_interval: Optional[float] = None,
        on_new_messages: Optional[NewMessagesCallback] = None,
    ):
        settings = get_settings()
        self.client = client
        self.ctx = ViewerContext(current_user_id)
        self.list_interval = list_interval or settings.conversations_poll_seconds
        self.active_interval = active_interval or settings.active_poll_seconds
        self.on_new_messages = on_new_messages

        self.conversations: List[Conversation] = []
        self.active_messages: List[MessageOut] = []
        self.server_unread: Optional[int] = None
        self.stale = False

        # ids cuyo mark-as-read ya se pidió en esta sesión
        self._marked: Set[str] = set()
        self._list_task: Optional[asyncio.Task] = None
        self._active_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def open_partner_id(self) -> Optional[str]:
        return self.ctx.partner_id

    def unread_total(self) -> int:
        return unread_total(self.conversations)

    # ---------- ciclo de vida ----------

    async def start(self) -> bool:
        """Carga inicial de la lista y arranque del bucle largo."""
        loaded = await self.refresh_conversations()
        if self._list_task is None:
            self._list_task = asyncio.create_task(self._every(self.list_interval, self.refresh_conversations))
        return loaded

    async def stop(self) -> None:
        tasks = [t for t in (self._list_task, self._active_task) if t is not None]
        tasks.extend(self._inflight)
        self._list_task = None
        self._active_task = None
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def open_conversation(self, partner_id: str) -> Optional[RefreshResult]:
        if partner_id == self.ctx.partner_id and self._active_task is not None:
            return None
        self._cancel_active()
        self.ctx = self.ctx.with_partner(partner_id)
        cached = next((c for c in self.conversations if c.partner_id == partner_id), None)
        self.active_messages = list(cached.messages) if cached else []
        self._active_task = asyncio.create_task(
            self._every(self.active_interval, self.refresh_active, partner_id)
        )
        return await self.refresh_active(partner_id)

    def close_conversation(self) -> None:
        self._cancel_active()
        self.ctx = self.ctx.with_partner(None)
        self.active_messages = []

    def _cancel_active(self) -> None:
        if self._active_task is not None:
            self._active_task.cancel()
            self._active_task = None

    async def _every(self, interval: float, refresh: Callable[..., Awaitable[Any]], *args) -> None:
        while True:
            await asyncio.sleep(interval)
            self._spawn(refresh(*args))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        task.add_done_callback(self._log_failure)
        return task

    @staticmethod
    def _log_failure(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background refresh failed", exc_info=task.exception())

    # ---------- refrescos ----------

    async def _fetch(self, partner_id: Optional[str] = None):
        try:
            sent, received = await asyncio.gather(
                self.client.list_messages("sent", partner_id),
                self.client.list_messages("received", partner_id),
            )
        except httpx.HTTPError as e:
            logger.warning("Message fetch failed, skipping cycle: %s", e)
            self.stale = True
            return None
        self.stale = False
        return sent, received

    async def refresh_conversations(self) -> bool:
        fetched = await self._fetch()
        if fetched is None:
            return False
        self.conversations = build_conversations(*fetched, self.ctx)

        try:
            self.server_unread = await self.client.unread_count()
        except httpx.HTTPError as e:
            logger.warning("Unread count fetch failed: %s", e)
        return True

    async def refresh_active(self, partner_id: str) -> Optional[RefreshResult]:
        fetched = await self._fetch(partner_id)
        if fetched is None:
            return None
        if partner_id != self.ctx.partner_id:
            logger.debug("Discarding refresh for %s, open conversation is %s", partner_id, self.ctx.partner_id)
            return None

        me = self.ctx.current_user_id
        sent, received = fetched
        polled = [
            m for m in coerce_messages(list(sent) + list(received))
            if partner_of(m, me) == partner_id
        ]
        result = refresh_conversation(self.active_messages, polled, self.ctx, self._marked)
        self.active_messages = result.merged

        if result.is_new and self.on_new_messages is not None:
            self.on_new_messages(partner_id, result.merged)
        if result.to_mark_read:
            await self._mark_read(result.to_mark_read)
        return result

    async def _mark_read(self, ids: Iterable[MessageId]) -> None:
        pending = [i for i in ids if str(i) not in self._marked]
        if not pending:
            return
        # Se registran antes de esperar: otro refresco concurrente no los repite
        self._marked.update(str(i) for i in pending)

        results = await asyncio.gather(
            *(self.client.mark_read(i) for i in pending), return_exceptions=True
        )
        done: List[MessageId] = []
        for message_id, res in zip(pending, results):
            if isinstance(res, BaseException):
                # Sigue sin leer en el servidor: el próximo ciclo lo reintenta
                self._marked.discard(str(message_id))
                if isinstance(res, httpx.HTTPError):
                    logger.warning("Mark-as-read failed for %s: %s", message_id, res)
                elif isinstance(res, Exception):
                    logger.error("Mark-as-read error for %s", message_id, exc_info=res)
                else:
                    raise res
            else:
                done.append(message_id)

        if done:
            self.active_messages = mark_read_locally(self.active_messages, done)
            for c in self.conversations:
                c.messages = mark_read_locally(c.messages, done)

    # ---------- acciones del usuario ----------

    async def send(self, content: str, subject: str = "") -> MessageOut:
        partner_id = self.ctx.partner_id
        if partner_id is None:
            raise SendError("No conversation is open", content=content)
        try:
            message = await self.client.send_message(partner_id, content, subject)
        except httpx.HTTPError as e:
            logger.warning("Send to %s failed: %s", partner_id, e)
            raise SendError("Message could not be sent", content=content, status_code=_status_of(e)) from e

        # Alta optimista hasta el próximo refresco autoritativo
        if self.ctx.partner_id == partner_id and all(str(m.id) != str(message.id) for m in self.active_messages):
            self.active_messages = sort_messages([*self.active_messages, message])
        return message

    async def delete(self, message_id: MessageId) -> None:
        try:
            await self.client.delete_message(message_id)
        except httpx.HTTPError as e:
            logger.warning("Delete of %s failed: %s", message_id, e)
            raise MessagingError("Message could not be deleted", status_code=_status_of(e)) from e

        key = str(message_id)
        self.active_messages = [m for m in self.active_messages if str(m.id) != key]
        for c in self.conversations:
            c.messages = [m for m in c.messages if str(m.id) != key]
        self.conversations = [c for c in self.conversations if c.messages]
