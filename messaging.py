"""
Buyer/seller private messaging.

A conversation caches its last message and an unread counter so the
conversation list renders without reading every message.
"""
import logging
from typing import List

from bson import ObjectId
from fastapi import HTTPException

from database import create_document, db, now_utc, to_str_id, update_documents
from schemas import Conversation, PrivateMessage

logger = logging.getLogger(__name__)


def participant_filter(user_id: str) -> dict:
    return {"$or": [{"participant1_id": user_id}, {"participant2_id": user_id}]}


def other_participant(conversation: dict, user_id: str) -> str:
    if conversation["participant1_id"] == user_id:
        return conversation["participant2_id"]
    return conversation["participant1_id"]


def get_conversation(conversation_id: str, user_id: str) -> dict:
    if not ObjectId.is_valid(conversation_id):
        raise HTTPException(400, "Invalid conversation id")
    conv = db["conversation"].find_one({"_id": ObjectId(conversation_id)})
    if not conv or user_id not in (conv["participant1_id"], conv["participant2_id"]):
        raise HTTPException(404, "Conversation not found")
    return conv


def list_conversations(user_id: str) -> List[dict]:
    convs = list(db["conversation"].find(participant_filter(user_id)).sort("last_message_time", -1))
    other_ids = {other_participant(c, user_id) for c in convs}
    names = {}
    oids = [ObjectId(i) for i in other_ids if ObjectId.is_valid(i)]
    if oids:
        for p in db["profile"].find({"_id": {"$in": oids}}, {"name": 1}):
            names[str(p["_id"])] = p.get("name")
    out = []
    for c in convs:
        d = to_str_id(c)
        other = other_participant(c, user_id)
        d["other_participant"] = {"id": other, "name": names.get(other) or "Unknown User"}
        out.append(d)
    return out


def open_conversation(user_id: str, participant_id: str) -> dict:
    if participant_id == user_id:
        raise HTTPException(400, "Cannot start a conversation with yourself")
    if not ObjectId.is_valid(participant_id) or not db["profile"].find_one({"_id": ObjectId(participant_id)}):
        raise HTTPException(404, "User not found")
    existing = db["conversation"].find_one({"$or": [
        {"participant1_id": user_id, "participant2_id": participant_id},
        {"participant1_id": participant_id, "participant2_id": user_id},
    ]})
    if existing:
        return to_str_id(existing)
    cid = create_document("conversation", Conversation(participant1_id=user_id, participant2_id=participant_id))
    return to_str_id(db["conversation"].find_one({"_id": ObjectId(cid)}))


def read_messages(conversation_id: str, user_id: str) -> List[dict]:
    conv = get_conversation(conversation_id, user_id)
    msgs = list(db["private_message"].find({"conversation_id": conversation_id}).sort("created_at", 1))
    update_documents("private_message",
                     {"conversation_id": conversation_id, "recipient_id": user_id, "is_read": False},
                     {"is_read": True})
    if conv.get("unread_count", 0) > 0 and conv.get("last_sender_id") != user_id:
        update_documents("conversation", {"_id": conv["_id"]}, {"unread_count": 0})
    return [to_str_id(m) for m in msgs]


def send_message(conversation_id: str, sender_id: str, content: str) -> dict:
    if not content or not content.strip():
        raise HTTPException(400, "Message cannot be empty")
    conv = get_conversation(conversation_id, sender_id)
    recipient_id = other_participant(conv, sender_id)
    sent_at = now_utc()
    mid = create_document("private_message", PrivateMessage(
        conversation_id=conversation_id,
        sender_id=sender_id,
        recipient_id=recipient_id,
        content=content.strip(),
    ))
    db["conversation"].update_one({"_id": conv["_id"]}, {
        "$set": {
            "last_message_text": content.strip(),
            "last_message_time": sent_at,
            "last_sender_id": sender_id,
            "updated_at": sent_at,
        },
        "$inc": {"unread_count": 1},
    })
    return to_str_id(db["private_message"].find_one({"_id": ObjectId(mid)}))
