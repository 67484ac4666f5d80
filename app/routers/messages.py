from fastapi import APIRouter, Depends, HTTPException, status, Query
from typing import Dict, List, Optional
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from ..db import get_db
from ..security import get_current_user
from ..schemas.message import (
    ConversationListOut,
    ConversationOut,
    Direction,
    MessageCreate,
    MessageOut,
    UnreadCountOut,
)
from ..schemas.user import UserSummary
from ..services.conversations import ViewerContext, build_conversations, unread_total
from ..utils import to_id, to_object_id, utcnow
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

def _oid(value: str, field_name: str = "id") -> ObjectId:
    return to_object_id(value, field_name)

async def _fetch_messages(
    db: AsyncIOMotorDatabase,
    user_id: str,
    direction: Direction,
    partner_id: Optional[str] = None,
) -> List[dict]:
    """Mensajes enviados o recibidos por el usuario, más recientes primero."""
    if direction == "sent":
        query = {"sender_id": user_id}
        if partner_id:
            query["receiver_id"] = partner_id
    else:
        query = {"receiver_id": user_id}
        if partner_id:
            query["sender_id"] = partner_id

    items = []
    async for doc in db.messages.find(query).sort([("created_at", -1), ("_id", -1)]):
        items.append(to_id(doc))
    return items

async def _partners(db: AsyncIOMotorDatabase, partner_ids: List[str]) -> Dict[str, UserSummary]:
    oids = [ObjectId(p) for p in partner_ids if ObjectId.is_valid(p)]
    out: Dict[str, UserSummary] = {}
    if not oids:
        return out
    async for doc in db.users.find({"_id": {"$in": oids}}):
        user = to_id(doc)
        out[user["id"]] = UserSummary(
            id=user["id"],
            name=user.get("name", ""),
            email=user.get("email"),
            user_type=user.get("user_type"),
        )
    return out

@router.post("", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    payload: MessageCreate,
    db: AsyncIOMotorDatabase = Depends(get_db),
    current=Depends(get_current_user),
):
    """Enviar un mensaje a otro usuario"""
    if payload.receiver_id == current["id"]:
        raise HTTPException(400, "Cannot send a message to yourself")

    receiver = await db.users.find_one({"_id": _oid(payload.receiver_id, "receiver_id")})
    if not receiver:
        raise HTTPException(404, "Receiver not found")

    data = {
        "sender_id": current["id"],
        "receiver_id": payload.receiver_id,
        "subject": payload.subject,
        "content": payload.content,
        "created_at": utcnow(),
        "is_read": False,
    }
    res = await db.messages.insert_one(data)
    doc = await db.messages.find_one({"_id": res.inserted_id})
    logger.info("Message %s sent from %s to %s", res.inserted_id, current["id"], payload.receiver_id)
    return to_id(doc)

@router.get("", response_model=List[MessageOut])
async def list_messages(
    direction: Direction = Query("received", alias="type"),
    partner_id: Optional[str] = Query(None),
    db: AsyncIOMotorDatabase = Depends(get_db),
    current=Depends(get_current_user),
):
    """Listar mensajes enviados o recibidos (opcionalmente con un interlocutor)"""
    return await _fetch_messages(db, current["id"], direction, partner_id)

@router.get("/unread-count", response_model=UnreadCountOut)
async def get_unread_count(
    db: AsyncIOMotorDatabase = Depends(get_db),
    current=Depends(get_current_user),
):
    count = await db.messages.count_documents({"receiver_id": current["id"], "is_read": False})
    return {"count": count}

@router.get("/conversations", response_model=ConversationListOut)
async def list_conversations(
    db: AsyncIOMotorDatabase = Depends(get_db),
    current=Depends(get_current_user),
):
    """Conversaciones del usuario agrupadas por interlocutor"""
    sent = await _fetch_messages(db, current["id"], "sent")
    received = await _fetch_messages(db, current["id"], "received")
    conversations = build_conversations(sent, received, ViewerContext(current["id"]))

    partners = await _partners(db, [c.partner_id for c in conversations])
    for c in conversations:
        c.partner = partners.get(c.partner_id)

    return {
        "conversations": [c.to_out() for c in conversations],
        "unread_total": unread_total(conversations),
    }

@router.get("/conversations/{partner_id}", response_model=ConversationOut)
async def get_conversation(
    partner_id: str,
    db: AsyncIOMotorDatabase = Depends(get_db),
    current=Depends(get_current_user),
):
    sent = await _fetch_messages(db, current["id"], "sent", partner_id)
    received = await _fetch_messages(db, current["id"], "received", partner_id)
    conversations = build_conversations(sent, received, ViewerContext(current["id"], partner_id))
    if not conversations:
        raise HTTPException(404, "Conversation not found")

    conversation = conversations[0]
    conversation.partner = (await _partners(db, [partner_id])).get(partner_id)
    return conversation.to_out()

@router.put("/{message_id}/read", response_model=MessageOut)
async def mark_message_read(
    message_id: str,
    db: AsyncIOMotorDatabase = Depends(get_db),
    current=Depends(get_current_user),
):
    """Marcar un mensaje como leído (idempotente; sólo el destinatario)"""
    message = await db.messages.find_one({"_id": _oid(message_id), "receiver_id": current["id"]})
    if not message:
        raise HTTPException(404, "Message not found")

    if not message.get("is_read", False):
        await db.messages.update_one(
            {"_id": message["_id"], "is_read": {"$ne": True}},
            {"$set": {"is_read": True, "read_at": utcnow()}},
        )
        message = await db.messages.find_one({"_id": message["_id"]})
    return to_id(message)

@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    message_id: str,
    db: AsyncIOMotorDatabase = Depends(get_db),
    current=Depends(get_current_user),
):
    """Eliminar un mensaje (emisor o destinatario)"""
    message = await db.messages.find_one({
        "_id": _oid(message_id),
        "$or": [{"sender_id": current["id"]}, {"receiver_id": current["id"]}],
    })
    if not message:
        raise HTTPException(404, "Message not found")

    await db.messages.delete_one({"_id": message["_id"]})
    return None
