"""
User Service - resolves a channel identity to a user

A user may talk through several channels. Accounts are keyed by
``(provider, external_id)``; when a phone number is known it links a new
account to the existing user with that number.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import UserNotFoundError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.user import User, UserAccount

logger = get_logger(__name__)


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_account(self, provider: str, external_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User)
            .join(UserAccount, UserAccount.user_id == User.id)
            .where(
                UserAccount.provider == provider,
                UserAccount.external_id == external_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_or_create_by_account(
        self,
        provider: str,
        external_id: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> tuple[User, bool]:
        """
        Returns (user, is_new).

        Lookup order: the account itself, then a user with the same phone,
        then a new user. A concurrent insert of the same account is resolved
        by re-reading it.
        """
        user = await self.get_by_account(provider, external_id)
        if user is not None:
            return user, False

        normalized_phone = (
            PhoneNumberValidator.normalize(phone)
            if phone and PhoneNumberValidator.validate(phone)
            else None
        )

        user = None
        if normalized_phone:
            result = await self.db.execute(
                select(User).where(User.phone_number == normalized_phone)
            )
            user = result.scalar_one_or_none()

        is_new = user is None
        try:
            if user is None:
                user = User(name=name, phone_number=normalized_phone)
                self.db.add(user)
                await self.db.flush()
            self.db.add(UserAccount(user_id=user.id, provider=provider, external_id=external_id))
            await self.db.commit()
        except IntegrityError:
            # created concurrently
            await self.db.rollback()
            logger.info("User account created concurrently, re-reading", extra_data={
                "provider": provider,
                "phone": PhoneNumberValidator.mask(normalized_phone or ""),
            })
            existing = await self.get_by_account(provider, external_id)
            if existing is None:
                raise UserNotFoundError(f"{provider}:{external_id}")
            return existing, False

        await self.db.refresh(user)
        if is_new:
            logger.info("User created", extra_data={
                "user_id": user.id,
                "provider": provider,
            })
        else:
            logger.info("Account linked to existing user by phone", extra_data={
                "user_id": user.id,
                "provider": provider,
            })
        return user, is_new
