"""
Agregación de mensajes en conversaciones.

Lógica pura: no hace I/O. Recibe listas planas de mensajes (enviados y
recibidos por el usuario actual) y construye la vista de conversaciones por
interlocutor, con contadores de no leídos recalculados en cada pasada.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
import logging

from pydantic import ValidationError

from ..schemas.message import EPOCH, ConversationOut, MessageId, MessageOut
from ..schemas.user import UserSummary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewerContext:
    """Usuario actual y conversación abierta (si hay alguna)."""
    current_user_id: str
    partner_id: Optional[str] = None

    def with_partner(self, partner_id: Optional[str]) -> "ViewerContext":
        return ViewerContext(self.current_user_id, partner_id)


@dataclass
class Conversation:
    partner_id: str
    viewer_id: str
    messages: List[MessageOut] = field(default_factory=list)
    partner: Optional[UserSummary] = None

    @property
    def last_message(self) -> Optional[MessageOut]:
        return self.messages[-1] if self.messages else None

    @property
    def last_message_time(self) -> Optional[datetime]:
        last = self.last_message
        return last.created_at if last else None

    @property
    def unread_count(self) -> int:
        return sum(1 for m in self.messages if is_unread_for(m, self.viewer_id))

    def to_out(self) -> ConversationOut:
        return ConversationOut(
            partner_id=self.partner_id,
            partner=self.partner,
            messages=self.messages,
            last_message=self.last_message,
            last_message_time=self.last_message_time,
            unread_count=self.unread_count,
        )


@dataclass
class RefreshResult:
    merged: List[MessageOut]
    is_new: bool
    to_mark_read: List[MessageId]


# ==================== Normalización ====================

def coerce_messages(rows: Iterable[Any]) -> List[MessageOut]:
    """
    Valida filas crudas (dicts o MessageOut). Las filas sin id o sin
    participantes se descartan con un warning; nunca lanza excepción.
    """
    out: List[MessageOut] = []
    for row in rows or []:
        if isinstance(row, MessageOut):
            out.append(row)
            continue
        try:
            out.append(MessageOut.model_validate(row))
        except ValidationError as e:
            logger.warning("Discarding malformed message row %r: %s", row, e.errors())
    return out


def partner_of(message: MessageOut, current_user_id: str) -> str:
    return message.receiver_id if message.sender_id == current_user_id else message.sender_id


def is_unread_for(message: MessageOut, user_id: str) -> bool:
    return message.receiver_id == user_id and not message.is_read


def _id_key(value: MessageId) -> Tuple[int, int, str]:
    # ids enteros (o strings numéricos) se comparan como números; el resto como texto
    if isinstance(value, int):
        return (0, value, "")
    if value.isascii() and value.isdigit():
        return (0, int(value), "")
    return (1, 0, value)


def message_sort_key(message: MessageOut) -> Tuple[datetime, Tuple[int, int, str]]:
    return (message.created_at or EPOCH, _id_key(message.id))


def sort_messages(messages: Iterable[MessageOut]) -> List[MessageOut]:
    return sorted(messages, key=message_sort_key)


def _dedupe(messages: Iterable[MessageOut]) -> Dict[str, MessageOut]:
    # La última aparición de un id gana
    by_id: Dict[str, MessageOut] = {}
    for m in messages:
        by_id[str(m.id)] = m
    return by_id


# ==================== Operaciones ====================

def build_conversations(sent: Iterable[Any], received: Iterable[Any], ctx: ViewerContext) -> List[Conversation]:
    """
    Agrupa los mensajes por interlocutor. Cada grupo se ordena por
    (created_at, id) y las conversaciones por último mensaje, de más
    reciente a más antigua. Sin mensajes no hay conversación.
    """
    me = ctx.current_user_id
    messages = _dedupe(coerce_messages(sent) + coerce_messages(received))

    groups: Dict[str, List[MessageOut]] = {}
    for m in messages.values():
        if me not in (m.sender_id, m.receiver_id):
            logger.warning("Message %s does not involve user %s, skipping", m.id, me)
            continue
        groups.setdefault(partner_of(m, me), []).append(m)

    conversations = [
        Conversation(partner_id=partner_id, viewer_id=me, messages=sort_messages(group))
        for partner_id, group in groups.items()
    ]
    # sorted() es estable: empates conservan el orden de aparición
    return sorted(conversations, key=lambda c: c.last_message_time, reverse=True)


def refresh_conversation(
    existing: Iterable[Any],
    polled: Iterable[Any],
    ctx: ViewerContext,
    already_marked: Iterable[MessageId] = (),
) -> RefreshResult:
    """
    Reconcilia el estado local de la conversación abierta con un nuevo poll.

    `merged` es la unión por id (gana la copia recibida en el poll, salvo que
    revierta un leído), así que un poll con menos registros no hace
    desaparecer mensajes ya mostrados.
    `is_new` sólo es True si el poll trae estrictamente más mensajes que el
    estado local. `to_mark_read` son los mensajes dirigidos al usuario que
    siguen sin leer y que aún no se han pedido marcar en esta sesión.
    """
    existing = coerce_messages(existing)
    polled = coerce_messages(polled)

    by_id = _dedupe(existing)
    for key, m in _dedupe(polled).items():
        held = by_id.get(key)
        # Leído no vuelve a no leído aunque el servidor aún no lo refleje
        if held is not None and held.is_read and not m.is_read:
            m = m.model_copy(update={"is_read": True})
        by_id[key] = m
    merged = sort_messages(by_id.values())

    if len(polled) < len(existing):
        logger.info(
            "Poll returned %d messages, %d held locally; keeping union by id",
            len(polled), len(existing),
        )

    skip: Set[str] = {str(i) for i in already_marked}
    to_mark = [
        m.id for m in merged
        if is_unread_for(m, ctx.current_user_id) and str(m.id) not in skip
    ]
    return RefreshResult(merged=merged, is_new=len(polled) > len(existing), to_mark_read=to_mark)


def unread_total(conversations: Iterable[Any]) -> int:
    total = 0
    for c in conversations:
        total += c["unread_count"] if isinstance(c, dict) else c.unread_count
    return total


def mark_read_locally(messages: Iterable[MessageOut], ids: Iterable[MessageId]) -> List[MessageOut]:
    """Aplica la transición no leído -> leído a los ids dados. Nunca la revierte."""
    read = {str(i) for i in ids}
    return [
        m.model_copy(update={"is_read": True}) if str(m.id) in read and not m.is_read else m
        for m in messages
    ]
