"""
Tests for the message processor and user resolution
"""
import pytest
from sqlalchemy import func, select

from app.core.exceptions import TelegramError
from app.db.models.user import User, UserAccount
from app.domain.services.message_processor import MessageProcessor
from app.domain.services.user_service import UserService
from app.state_machine import replies
from tests.conftest import FakeChannelAdapter, FakePlanner, incoming_message


@pytest.fixture
def processor(db_session, catalog, closure_queue, clock) -> MessageProcessor:
    return MessageProcessor(
        db_session,
        planner=FakePlanner(),
        catalog=catalog,
        queue=closure_queue,
        clock=clock,
    )


class TestUserService:

    @pytest.mark.integration
    async def test_new_account_creates_user(self, db_session):
        service = UserService(db_session)

        user, is_new = await service.find_or_create_by_account("telegram", "42", name="Ana")

        assert is_new
        assert user.name == "Ana"
        assert [(a.provider, a.external_id) for a in user.accounts] == [("telegram", "42")]

    @pytest.mark.integration
    async def test_known_account_returns_same_user(self, db_session):
        service = UserService(db_session)
        first, _ = await service.find_or_create_by_account("telegram", "42")

        second, is_new = await service.find_or_create_by_account("telegram", "42")

        assert second.id == first.id
        assert is_new is False

    @pytest.mark.integration
    async def test_phone_links_accounts_across_channels(self, db_session):
        service = UserService(db_session)
        whatsapp_user, _ = await service.find_or_create_by_account(
            "whatsapp", "5511912345678", phone="5511912345678"
        )

        telegram_user, is_new = await service.find_or_create_by_account(
            "telegram", "987", phone="(11) 91234-5678"
        )

        assert telegram_user.id == whatsapp_user.id
        assert is_new is False
        assert whatsapp_user.phone_number == "+5511912345678"
        assert await db_session.scalar(select(func.count(UserAccount.id))) == 2

    @pytest.mark.integration
    async def test_invalid_phone_is_not_stored(self, db_session):
        user, _ = await UserService(db_session).find_or_create_by_account("telegram", "1", phone="abc")

        assert user.phone_number is None

    @pytest.mark.integration
    async def test_get_by_account_unknown(self, db_session):
        assert await UserService(db_session).get_by_account("telegram", "nobody") is None


class TestMessageProcessor:

    @pytest.mark.integration
    async def test_reply_is_sent_to_the_sender(self, processor, db_session):
        adapter = FakeChannelAdapter()

        result = await processor.process(incoming_message("salva Inception"), adapter)

        assert result.reply == replies.saved("Inception (2010)")
        assert adapter.sent == [("1001", replies.saved("Inception (2010)"))]
        assert len(adapter.after_send_calls) == 1
        assert await db_session.scalar(select(func.count(User.id))) == 1

    @pytest.mark.integration
    async def test_same_sender_keeps_one_conversation(self, processor):
        adapter = FakeChannelAdapter()

        first = await processor.process(incoming_message("salva Matrix"), adapter)
        second = await processor.process(incoming_message("1"), adapter)

        assert first.conversation_id == second.conversation_id
        assert adapter.sent[-1][1] == replies.saved("Matrix (1999)")

    @pytest.mark.integration
    async def test_engine_crash_still_sends_apology(self, processor, monkeypatch):
        adapter = FakeChannelAdapter()

        async def broken(user_id, text):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(processor.engine, "handle_turn", broken)
        result = await processor.process(incoming_message("oi"), adapter)

        assert result is None
        assert adapter.sent == [("1001", replies.GENERIC_APOLOGY)]

    @pytest.mark.integration
    async def test_delivery_failure_is_not_raised(self, processor):
        adapter = FakeChannelAdapter(send_error=TelegramError("chat not found"))

        result = await processor.process(incoming_message("oi"), adapter)

        assert result is not None
        assert adapter.sent == []
        assert len(adapter.after_send_calls) == 1

    @pytest.mark.integration
    async def test_text_is_sanitized_before_the_turn(self, processor):
        adapter = FakeChannelAdapter()

        result = await processor.process(incoming_message("  salva   Inception\x00 "), adapter)

        assert result.reply == replies.saved("Inception (2010)")
