"""
User Model - end users and their channel accounts
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.db.database import Base


class User(Base):
    """A person talking to the bot, possibly through more than one channel"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=True)
    # E.164; links a WhatsApp account and a Telegram account that shared a contact
    phone_number = Column(String(20), unique=True, index=True, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    accounts = relationship("UserAccount", back_populates="user", lazy="selectin")


class UserAccount(Base):
    """Identity of a user on one channel (telegram chat id, whatsapp wa_id)"""

    __tablename__ = "user_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)  # telegram or whatsapp
    external_id = Column(String(64), nullable=False)

    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="accounts")

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_user_accounts_provider_external_id"),
    )
