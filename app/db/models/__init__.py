"""
Database Models
"""
from app.db.models.user import User, UserAccount
from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageRole
from app.db.models.item import Item, ItemType

__all__ = [
    "User",
    "UserAccount",
    "Conversation",
    "Message",
    "MessageRole",
    "Item",
    "ItemType",
]
