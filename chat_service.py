import logging
from typing import Any, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from errors import NotFoundError, ServiceError
from helpers import paginate, pagination_info, to_object_id, utc_now

logger = logging.getLogger(__name__)

CONVERSATION_STATUSES = ("open", "assigned", "resolved", "closed")
CATEGORIES = ("order", "delivery", "payment", "product", "account", "general")
ACTIVE = ["open", "assigned"]


class ChatService:
    """Support conversations between customers and agents."""

    def __init__(self, db_connection, notification_service=None):
        self.db = db_connection
        self.conversations = self.db["chat_conversations"]
        self.messages = self.db["chat_messages"]
        self.notifications = notification_service

    def ensure_indexes(self):
        self.conversations.create_index([("user", ASCENDING), ("status", ASCENDING)])
        self.conversations.create_index([("status", ASCENDING), ("last_message_at", DESCENDING)])
        self.messages.create_index([("conversation", ASCENDING), ("created_at", ASCENDING)])

    def _add_message(self, conversation_id: Any, sender_id: Any, sender_type: str, message: str,
                     message_type: str = "text", attachments: Optional[List[str]] = None) -> dict:
        if not message and not attachments:
            raise ServiceError("Message is required")
        now = utc_now()
        doc = {
            "conversation": str(conversation_id),
            "sender": str(sender_id),
            "sender_type": sender_type,
            "message": message,
            "message_type": message_type,
            "attachments": attachments or [],
            "is_read": False,
            "read_at": None,
            "created_at": now,
        }
        doc["_id"] = self.messages.insert_one(doc).inserted_id
        self.conversations.update_one({"_id": to_object_id(conversation_id)},
                                      {"$set": {"last_message_at": now, "updated_at": now}})
        return doc

    def get_conversation(self, conversation_id: Any) -> dict:
        conversation = self.conversations.find_one({"_id": to_object_id(conversation_id)})
        if not conversation:
            raise NotFoundError("Conversation not found")
        return conversation

    def _own_conversation(self, user_id: Any, conversation_id: Any) -> dict:
        conversation = self.conversations.find_one({"_id": to_object_id(conversation_id), "user": str(user_id)})
        if not conversation:
            raise NotFoundError("Conversation not found")
        return conversation

    def create_conversation(self, user_id: Any, message: str, subject: str = None, category: str = None) -> tuple:
        if not message:
            raise ServiceError("Message is required")
        category = category or "general"
        if category not in CATEGORIES:
            raise ServiceError(f"Invalid category: {category}")

        existing = self.conversations.find_one({"user": str(user_id), "status": {"$in": ACTIVE}})
        if existing:
            chat_message = self._add_message(existing["_id"], user_id, "user", message)
            return self.get_conversation(existing["_id"]), chat_message

        now = utc_now()
        conversation = {
            "user": str(user_id),
            "support_agent": None,
            "status": "open",
            "priority": "medium",
            "category": category,
            "subject": subject or "Support request",
            "last_message_at": now,
            "rating": None,
            "feedback": None,
            "created_at": now,
            "updated_at": now,
        }
        conversation["_id"] = self.conversations.insert_one(conversation).inserted_id
        chat_message = self._add_message(conversation["_id"], user_id, "user", message)
        logger.info(f"[CHAT] Conversation {conversation['_id']} opened by {user_id}")
        return conversation, chat_message

    def user_conversations(self, user_id: Any) -> list:
        return list(self.conversations.find({"user": str(user_id)}).sort("last_message_at", DESCENDING))

    def conversation_messages(self, user_id: Any, conversation_id: Any, is_admin: bool = False) -> tuple:
        if is_admin:
            conversation = self.get_conversation(conversation_id)
        else:
            conversation = self._own_conversation(user_id, conversation_id)
            self.messages.update_many(
                {"conversation": str(conversation["_id"]), "sender_type": "support", "is_read": False},
                {"$set": {"is_read": True, "read_at": utc_now()}},
            )
        messages = list(self.messages.find({"conversation": str(conversation["_id"])}).sort("created_at", ASCENDING))
        return conversation, messages

    def send_message(self, user_id: Any, conversation_id: Any, message: str,
                     attachments: Optional[List[str]] = None) -> dict:
        conversation = self._own_conversation(user_id, conversation_id)
        if conversation["status"] == "closed":
            raise ServiceError("Conversation is closed")
        return self._add_message(conversation["_id"], user_id, "user", message,
                                 "image" if attachments and not message else "text", attachments)

    def close_conversation(self, user_id: Any, conversation_id: Any, rating: int = None,
                           feedback: str = None) -> dict:
        if rating is not None and not 1 <= rating <= 5:
            raise ServiceError("Rating must be between 1 and 5")
        conversation = self.conversations.find_one_and_update(
            {"_id": to_object_id(conversation_id), "user": str(user_id)},
            {"$set": {"status": "closed", "rating": rating, "feedback": feedback, "updated_at": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        if not conversation:
            raise NotFoundError("Conversation not found")
        return conversation

    # ---------- support ----------
    def all_conversations(self, status: str = None, category: str = None, page: Any = 1, limit: Any = 20) -> dict:
        query = {}
        if status:
            if status not in CONVERSATION_STATUSES:
                raise ServiceError(f"Invalid status: {status}")
            query["status"] = status
        if category:
            if category not in CATEGORIES:
                raise ServiceError(f"Invalid category: {category}")
            query["category"] = category
        page, limit, skip = paginate(page, limit)
        conversations = list(self.conversations.find(query).sort("last_message_at", DESCENDING).skip(skip).limit(limit))
        total = self.conversations.count_documents(query)
        return {"conversations": conversations, "pagination": pagination_info(total, page, limit)}

    def assign_conversation(self, admin_id: Any, conversation_id: Any, support_agent_id: Any = None) -> tuple:
        agent = str(to_object_id(support_agent_id)) if support_agent_id else str(admin_id)
        conversation = self.conversations.find_one_and_update(
            {"_id": to_object_id(conversation_id)},
            {"$set": {"support_agent": agent, "status": "assigned", "updated_at": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        if not conversation:
            raise NotFoundError("Conversation not found")
        system_message = self._add_message(conversation["_id"], admin_id, "system",
                                           "A support agent has been assigned to your conversation", "system")
        return conversation, system_message

    def send_support_message(self, admin_id: Any, conversation_id: Any, message: str,
                             attachments: Optional[List[str]] = None) -> dict:
        conversation = self.get_conversation(conversation_id)
        chat_message = self._add_message(conversation["_id"], admin_id, "support", message, "text", attachments)
        if self.notifications:
            self.notifications.notify(conversation["user"], "New message from support",
                                      (message or "Sent an attachment")[:120], "general",
                                      data={"conversation_id": str(conversation["_id"])})
        return chat_message

    def resolve_conversation(self, admin_id: Any, conversation_id: Any) -> tuple:
        conversation = self.conversations.find_one_and_update(
            {"_id": to_object_id(conversation_id)},
            {"$set": {"status": "resolved", "updated_at": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        if not conversation:
            raise NotFoundError("Conversation not found")
        system_message = self._add_message(conversation["_id"], admin_id, "system",
                                           "This conversation has been marked as resolved", "system")
        return conversation, system_message

    def can_join(self, user: dict, conversation_id: Any) -> bool:
        conversation = self.get_conversation(conversation_id)
        return user.get("role") == "admin" or conversation["user"] == str(user["_id"])
