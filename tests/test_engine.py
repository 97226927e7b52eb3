"""
Tests for the conversation lifecycle engine

Turns run against the in-memory SQLite store, the fake Redis queue and fake
catalog/planner collaborators.
"""
import asyncio
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select

from app.core.config import settings as app_settings
from app.db.models.item import Item
from app.db.models.message import Message
from app.domain.services.closure_queue import SCHEDULE_KEY
from app.domain.services.intent_classifier import IntentClassifier
from app.domain.services.planner import PlannerReply, ToolCall
from app.domain.services.tool_executor import SAVE_ITEM, ToolContext, ToolExecutor
from app.state_machine import replies
from app.state_machine.engine import ConversationEngine
from app.state_machine.states import ConversationState
from tests.conftest import FakeCatalog, FakePlanner, movie


async def _titles(db_session, user_id: int) -> list[str]:
    result = await db_session.execute(
        select(Item.title).where(Item.user_id == user_id).order_by(Item.id)
    )
    return list(result.scalars().all())


async def _seed_items(db_session, user_id: int, *titles: str) -> None:
    tools = ToolExecutor(db_session)
    for title in titles:
        await tools.execute(SAVE_ITEM, ToolContext(user_id=user_id, conversation_id=0), {"type": "movie", "title": title})
    await db_session.commit()


def _engine_with(db_session, store, scheduler, clock, *, planner=None, catalog=None, **overrides) -> ConversationEngine:
    return ConversationEngine(
        store=store,
        scheduler=scheduler,
        classifier=IntentClassifier(max_batch_items=10),
        tools=ToolExecutor(db_session),
        planner=planner or FakePlanner(),
        catalog=catalog or FakeCatalog(),
        clock=clock,
        settings=app_settings.model_copy(update=overrides),
    )


class TestSaveAndSelection:

    @pytest.mark.integration
    async def test_single_match_is_saved_directly(self, engine, user, db_session):
        result = await engine.handle_turn(user.id, "salva Inception")

        assert result.reply == replies.saved("Inception (2010)")
        assert result.state == ConversationState.IDLE
        assert result.tools_used == [SAVE_ITEM]
        assert [item.label() for item in result.confirmed_items] == ["Inception (2010)"]
        assert await _titles(db_session, user.id) == ["Inception"]

    @pytest.mark.integration
    async def test_three_matches_then_pick_second(self, engine, store, user, db_session):
        first = await engine.handle_turn(user.id, "salva Matrix")

        assert first.state == ConversationState.AWAITING_CONFIRMATION
        conversation = await store.get(first.conversation_id)
        assert conversation.state == "awaiting_confirmation"
        assert conversation.context["kind"] == "selection"
        assert len(conversation.context["candidates"]) == 3
        assert "1. Matrix (1999)" in first.reply

        second = await engine.handle_turn(user.id, "2")

        assert second.state == ConversationState.IDLE
        assert second.reply == replies.saved("Matrix Reloaded (2003)")
        assert await _titles(db_session, user.id) == ["Matrix Reloaded"]

    @pytest.mark.integration
    @pytest.mark.parametrize("answer", ["0", "4", "Matrix"])
    async def test_out_of_range_selection_saves_nothing(self, engine, store, user, db_session, answer):
        first = await engine.handle_turn(user.id, "salva Matrix")
        before = (await store.get(first.conversation_id)).context

        result = await engine.handle_turn(user.id, answer)

        assert result.state == ConversationState.AWAITING_CONFIRMATION
        assert result.reply == replies.selection_reprompt(3)
        assert (await store.get(first.conversation_id)).context == before
        assert await _titles(db_session, user.id) == []

    @pytest.mark.integration
    async def test_cancel_during_selection(self, engine, user, db_session):
        await engine.handle_turn(user.id, "salva Matrix")

        result = await engine.handle_turn(user.id, "cancela")

        assert result.state == ConversationState.IDLE
        assert result.reply == replies.CANCELLED
        assert await _titles(db_session, user.id) == []

    @pytest.mark.integration
    async def test_not_found(self, engine, user):
        result = await engine.handle_turn(user.id, "salva Xyzzy Qwerty")

        assert result.reply == replies.not_found("Xyzzy Qwerty")
        assert result.state == ConversationState.IDLE

    @pytest.mark.integration
    async def test_link_is_saved_as_link(self, engine, user, db_session):
        result = await engine.handle_turn(user.id, "https://example.com/artigo")

        assert result.state == ConversationState.IDLE
        item = (await db_session.execute(select(Item))).scalar_one()
        assert (item.type, item.title) == ("link", "https://example.com/artigo")


class TestBatch:

    @pytest.mark.integration
    async def test_all_unique_matches_resolve_in_one_turn(self, store, scheduler, clock, user, db_session):
        catalog = FakeCatalog({
            "clube da luta": [movie("Clube da Luta", 1999, "550")],
            "matrix": [movie("Matrix", 1999, "603")],
        })
        engine = _engine_with(db_session, store, scheduler, clock, catalog=catalog)

        result = await engine.handle_turn(user.id, "salva clube da luta e matrix")

        assert result.state == ConversationState.IDLE
        assert len(result.confirmed_items) == 2
        assert "✅ [1/2] Clube da Luta (1999) salvo!" in result.reply
        assert "✅ [2/2] Matrix (1999) salvo!" in result.reply
        assert await _titles(db_session, user.id) == ["Clube da Luta", "Matrix"]

    @pytest.mark.integration
    async def test_ambiguous_item_pauses_batch(self, engine, store, user, db_session):
        first = await engine.handle_turn(user.id, "salva Inception, Duna e Interstellar")

        assert first.state == ConversationState.AWAITING_BATCH_ITEM
        assert "✅ [1/3] Inception (2010) salvo!" in first.reply
        assert "[2/3] *Duna*" in first.reply
        context = (await store.get(first.conversation_id)).context
        assert context["kind"] == "batch"
        assert context["current_index"] == 1
        assert [item["status"] for item in context["queue"]] == ["confirmed", "processing", "pending"]

        second = await engine.handle_turn(user.id, "2")

        assert second.state == ConversationState.IDLE
        assert "✅ [2/3] Duna (1984) salvo!" in second.reply
        assert "✅ [3/3] Interstellar (2014) salvo!" in second.reply
        assert len(second.confirmed_items) == 3
        assert await _titles(db_session, user.id) == ["Inception", "Duna", "Interstellar"]

    @pytest.mark.integration
    async def test_deny_skips_current_item(self, engine, user, db_session):
        await engine.handle_turn(user.id, "salva Duna, Inception")

        result = await engine.handle_turn(user.id, "não")

        assert result.state == ConversationState.IDLE
        assert '❌ [1/2] Não encontrei "Duna"' in result.reply
        assert await _titles(db_session, user.id) == ["Inception"]

    @pytest.mark.integration
    async def test_invalid_choice_reprompts_without_advancing(self, engine, store, user):
        first = await engine.handle_turn(user.id, "salva Duna, Inception")

        result = await engine.handle_turn(user.id, "7")

        assert result.state == ConversationState.AWAITING_BATCH_ITEM
        assert result.reply == replies.batch_reprompt("Duna", 2)
        assert (await store.get(first.conversation_id)).context["current_index"] == 0

    @pytest.mark.integration
    async def test_cancel_stops_batch_and_keeps_saved_items(self, engine, user, db_session):
        await engine.handle_turn(user.id, "salva Inception, Duna e Interstellar")

        result = await engine.handle_turn(user.id, "cancela")

        assert result.state == ConversationState.IDLE
        assert "Inception (2010)" in result.reply
        assert await _titles(db_session, user.id) == ["Inception"]

    @pytest.mark.integration
    async def test_unknown_items_are_reported_as_skipped(self, engine, user, db_session):
        result = await engine.handle_turn(user.id, "salva Inception, Xyzzy")

        assert result.state == ConversationState.IDLE
        assert '❌ [2/2] Não encontrei "Xyzzy"' in result.reply
        assert "🎉 Pronto! 1 item(ns) salvo(s)" in result.reply

    @pytest.mark.integration
    async def test_catalog_failure_mid_batch_keeps_progress_lines(self, store, scheduler, clock, user, db_session):
        class FlakyCatalog(FakeCatalog):
            async def search(self, query, item_type):
                if query == "Duna":
                    raise RuntimeError("tmdb down")
                return await super().search(query, item_type)

        catalog = FlakyCatalog({"Inception": [movie("Inception", 2010)]})
        engine = _engine_with(db_session, store, scheduler, clock, catalog=catalog)

        result = await engine.handle_turn(user.id, "salva Inception, Duna")

        assert result.state == ConversationState.IDLE
        assert result.reply.startswith(replies.batch_detected(["Inception", "Duna"]))
        assert result.reply.endswith(replies.GENERIC_FAILURE)
        assert await _titles(db_session, user.id) == ["Inception"]


class TestDeleteAndList:

    @pytest.mark.integration
    async def test_delete_all(self, engine, user, db_session):
        await _seed_items(db_session, user.id, "Matrix", "Duna")

        result = await engine.handle_turn(user.id, "apaga tudo")

        assert result.reply == replies.deleted_all(2)
        assert await _titles(db_session, user.id) == []

    @pytest.mark.integration
    async def test_delete_by_index_uses_listing_order(self, engine, user, db_session):
        await _seed_items(db_session, user.id, "Matrix", "Duna")

        result = await engine.handle_turn(user.id, "apaga o 1")

        assert result.reply == replies.deleted_one("Duna")
        assert await _titles(db_session, user.id) == ["Matrix"]

    @pytest.mark.integration
    async def test_delete_index_out_of_range(self, engine, user, db_session):
        await _seed_items(db_session, user.id, "Matrix", "Duna")

        result = await engine.handle_turn(user.id, "apaga o 5")

        assert result.reply == replies.delete_index_out_of_range(5, 2)
        assert len(await _titles(db_session, user.id)) == 2

    @pytest.mark.integration
    async def test_delete_by_index_beyond_first_page(self, engine, user, db_session):
        await _seed_items(db_session, user.id, *[f"Item {i:02d}" for i in range(1, 31)])

        result = await engine.handle_turn(user.id, "apaga 25")

        assert result.reply == replies.deleted_one("Item 06")
        titles = await _titles(db_session, user.id)
        assert len(titles) == 29
        assert "Item 06" not in titles

    @pytest.mark.integration
    async def test_delete_index_out_of_range_reports_real_total(self, engine, user, db_session):
        await _seed_items(db_session, user.id, *[f"Item {i:02d}" for i in range(1, 31)])

        result = await engine.handle_turn(user.id, "apaga 31")

        assert result.reply == replies.delete_index_out_of_range(31, 30)
        assert len(await _titles(db_session, user.id)) == 30

    @pytest.mark.integration
    async def test_delete_by_name_asks_confirmation(self, engine, user, db_session):
        await _seed_items(db_session, user.id, "Matrix", "Matrix Reloaded", "Duna")

        first = await engine.handle_turn(user.id, "deleta Matrix")
        assert first.state == ConversationState.AWAITING_CONFIRMATION

        second = await engine.handle_turn(user.id, "sim")

        assert second.state == ConversationState.IDLE
        assert second.reply == replies.deleted_many(["Matrix Reloaded", "Matrix"])
        assert await _titles(db_session, user.id) == ["Duna"]

    @pytest.mark.integration
    async def test_delete_by_name_declined(self, engine, user, db_session):
        await _seed_items(db_session, user.id, "Matrix")
        await engine.handle_turn(user.id, "deleta Matrix")

        result = await engine.handle_turn(user.id, "não")

        assert result.reply == replies.DELETE_CANCELLED
        assert await _titles(db_session, user.id) == ["Matrix"]

    @pytest.mark.integration
    async def test_delete_without_target_asks_which(self, engine, user):
        result = await engine.handle_turn(user.id, "apaga")

        assert result.reply == replies.DELETE_WHICH
        assert result.state == ConversationState.IDLE

    @pytest.mark.integration
    async def test_list_and_empty_list(self, engine, user, db_session):
        empty = await engine.handle_turn(user.id, "lista")
        assert empty.reply == replies.NO_ITEMS_FOUND

        await _seed_items(db_session, user.id, "Matrix", "Duna")
        listed = await engine.handle_turn(user.id, "lista")

        assert listed.reply.startswith("📚 Seus itens (2):")
        assert "1. 🎬 Duna" in listed.reply

    @pytest.mark.integration
    async def test_search_by_name(self, engine, user, db_session):
        await _seed_items(db_session, user.id, "Matrix", "Duna")

        result = await engine.handle_turn(user.id, "busca duna")

        assert "Duna" in result.reply
        assert "Matrix" not in result.reply


class TestSavePrevious:

    @pytest.mark.integration
    async def test_previous_user_message_becomes_a_note(self, engine, user, db_session):
        await engine.handle_turn(user.id, "comprar leite amanhã")

        result = await engine.handle_turn(user.id, "salva isso")

        assert result.reply == replies.SAVED_PREVIOUS
        item = (await db_session.execute(select(Item))).scalar_one()
        assert (item.type, item.title) == ("note", "comprar leite amanhã")
        assert item.item_metadata["saved_from"] == "previous_message"

    @pytest.mark.integration
    async def test_nothing_to_save(self, engine, user):
        result = await engine.handle_turn(user.id, "salva isso")

        assert result.reply == replies.NOTHING_TO_SAVE

    @pytest.mark.integration
    async def test_old_message_is_out_of_reach(self, engine, user, clock):
        await engine.handle_turn(user.id, "comprar leite amanhã")
        clock.advance(minutes=10)

        result = await engine.handle_turn(user.id, "salva isso")

        assert result.reply == replies.NOTHING_TO_SAVE


class TestPlannerDelegation:

    @pytest.mark.integration
    async def test_free_form_goes_to_planner_with_history(self, engine, planner, user):
        planner.replies = [PlannerReply(text="Oi!"), PlannerReply(text="Recomendo Duna.")]
        await engine.handle_turn(user.id, "me indica um filme de ficção")

        result = await engine.handle_turn(user.id, "algo mais recente")

        assert result.reply == "Recomendo Duna."
        assert [m.content for m in planner.requests[1].history] == ["me indica um filme de ficção", "Oi!"]
        assert planner.requests[1].message == "algo mais recente"

    @pytest.mark.integration
    async def test_planner_choices_open_a_selection(self, engine, planner, user, db_session):
        planner.replies = [PlannerReply(text="Qual destes?", choices=[movie("Duna", 2021), movie("Duna", 1984)])]

        first = await engine.handle_turn(user.id, "aquele filme do deserto")

        assert first.state == ConversationState.AWAITING_CONFIRMATION
        assert first.reply == "Qual destes?\n\n1. Duna (2021)\n2. Duna (1984)"

        second = await engine.handle_turn(user.id, "2")
        assert second.reply == replies.saved("Duna (1984)")
        assert await _titles(db_session, user.id) == ["Duna"]

    @pytest.mark.integration
    async def test_planner_reply_without_choices_stays_idle(self, engine, planner, user):
        # a question in the text alone is not a selection
        planner.replies = [PlannerReply(text="Qual deles você quer?")]

        result = await engine.handle_turn(user.id, "aquele filme do deserto")

        assert result.state == ConversationState.IDLE

    @pytest.mark.integration
    async def test_planner_tool_calls_are_executed(self, engine, planner, user, db_session):
        planner.replies = [PlannerReply(
            text="Anotado!",
            tool_calls=[ToolCall(name=SAVE_ITEM, arguments={"type": "note", "title": "ligar pro João"})],
        )]

        result = await engine.handle_turn(user.id, "me lembra de ligar pro João")

        assert result.reply == "Anotado!"
        assert result.tools_used == [SAVE_ITEM]
        assert await _titles(db_session, user.id) == ["ligar pro João"]

    @pytest.mark.integration
    async def test_failed_planner_tool_call_ends_with_failure_reply(self, engine, planner, user):
        planner.replies = [PlannerReply(text="Feito", tool_calls=[ToolCall(name="delete_item", arguments={"item_id": 999})])]

        result = await engine.handle_turn(user.id, "faz aquilo que eu pedi")

        assert result.state == ConversationState.IDLE
        assert result.reply == replies.GENERIC_FAILURE

    @pytest.mark.integration
    async def test_planner_exception_becomes_apology(self, engine, planner, user):
        planner.replies = [RuntimeError("boom")]

        result = await engine.handle_turn(user.id, "qual o sentido da vida?")

        assert result.reply == replies.PLANNER_APOLOGY
        assert result.state == ConversationState.IDLE
        assert result.applied

    @pytest.mark.integration
    async def test_degraded_planner_reply_is_passed_through(self, engine, planner, user):
        planner.replies = [PlannerReply(text="⚠️ Serviço de IA indisponível.", degraded=True)]

        result = await engine.handle_turn(user.id, "qual o sentido da vida?")

        assert result.reply == "⚠️ Serviço de IA indisponível."

    @pytest.mark.integration
    async def test_planner_timeout(self, store, scheduler, clock, user, db_session):
        async def slow(request):
            await asyncio.sleep(1)
            return PlannerReply(text="tarde demais")

        engine = _engine_with(
            db_session, store, scheduler, clock,
            planner=FakePlanner(slow),
            PLANNER_TIMEOUT_SECONDS=0.05,
        )

        result = await engine.handle_turn(user.id, "qual o sentido da vida?")

        assert result.reply == replies.PLANNER_APOLOGY
        assert result.state == ConversationState.IDLE


class TestLifecycle:

    @pytest.mark.integration
    async def test_idle_turn_arms_the_close_timer(self, engine, store, user, clock, fake_redis):
        result = await engine.handle_turn(user.id, "oi")

        conversation = await store.get(result.conversation_id)
        assert result.state == ConversationState.IDLE
        assert conversation.state == "waiting_close"
        assert conversation.close_at == clock() + timedelta(seconds=180)
        assert f"close:{conversation.id}" in fake_redis.zsets[SCHEDULE_KEY]

    @pytest.mark.integration
    async def test_awaiting_turn_does_not_arm_the_timer(self, engine, store, user):
        result = await engine.handle_turn(user.id, "salva Matrix")

        conversation = await store.get(result.conversation_id)
        assert conversation.close_at is None
        assert conversation.close_job_id is None

    @pytest.mark.integration
    async def test_activity_before_close_at_resets_the_timer(self, engine, scheduler, store, user, clock):
        first = await engine.handle_turn(user.id, "oi")
        clock.advance(100)
        await engine.handle_turn(user.id, "lista")

        clock.advance(80)  # original close_at
        stats = await scheduler.dispatch_due_jobs()
        swept = await scheduler.sweep_due()

        conversation = await store.get(first.conversation_id)
        assert stats["closed"] == 0 and swept == 0
        assert conversation.state == "waiting_close"
        assert conversation.close_at == clock() + timedelta(seconds=100)

    @pytest.mark.integration
    async def test_closed_conversation_reopens_on_next_message(self, engine, scheduler, store, user, clock):
        first = await engine.handle_turn(user.id, "oi")
        clock.advance(180)
        await scheduler.dispatch_due_jobs()
        assert (await store.get(first.conversation_id)).state == "closed"

        second = await engine.handle_turn(user.id, "salva Inception")

        assert second.conversation_id == first.conversation_id
        assert second.reply == replies.saved("Inception (2010)")

    @pytest.mark.integration
    async def test_firing_twice_is_idempotent(self, engine, scheduler, store, user, clock):
        result = await engine.handle_turn(user.id, "oi")
        clock.advance(180)

        assert await scheduler.handle_fired_job({"conversation_id": result.conversation_id}) is True
        assert await scheduler.handle_fired_job({"conversation_id": result.conversation_id}) is False
        assert await scheduler.sweep_due() == 0

    @pytest.mark.integration
    async def test_queue_outage_still_closes_through_sweep(self, engine, scheduler, store, user, clock, fake_redis):
        fake_redis.fail_with = RedisConnectionError("redis unreachable")
        result = await engine.handle_turn(user.id, "oi")

        assert result.reply
        clock.advance(180 + app_settings.CLOSURE_SWEEP_INTERVAL_SECONDS)
        assert await scheduler.sweep_due() == 1
        assert (await store.get(result.conversation_id)).state == "closed"

    @pytest.mark.integration
    async def test_stale_awaiting_conversation_is_force_closed(self, engine, scheduler, store, user, clock):
        result = await engine.handle_turn(user.id, "salva Matrix")

        clock.advance(minutes=31)
        assert await scheduler.sweep_stale_awaiting() == 1

        conversation = await store.get(result.conversation_id)
        assert conversation.state == "closed"
        assert conversation.context == {"kind": "closed"}

    @pytest.mark.integration
    async def test_close_fields_stay_paired_across_turns(self, engine, scheduler, store, user, clock):
        script = ["oi", "salva Matrix", "2", "salva Duna, Inception", "1", "lista", "apaga tudo"]
        for text in script:
            result = await engine.handle_turn(user.id, text)
            conversation = await store.get(result.conversation_id)
            assert (conversation.close_at is None) == (conversation.close_job_id is None)
            assert (conversation.state == "waiting_close") == (conversation.close_at is not None)
            clock.advance(30)


class TestFailureHandling:

    @pytest.mark.integration
    async def test_catalog_failure_ends_idle_with_failure_reply(self, engine, catalog, user):
        catalog.fail_with = RuntimeError("tmdb down")

        result = await engine.handle_turn(user.id, "salva Matrix")

        assert result.reply == replies.GENERIC_FAILURE
        assert result.state == ConversationState.IDLE

    @pytest.mark.integration
    async def test_unexpected_error_keeps_last_committed_state(self, engine, store, user, db_session, monkeypatch):
        first = await engine.handle_turn(user.id, "salva Matrix")

        def broken(text):
            raise RuntimeError("classifier bug")

        monkeypatch.setattr(engine.classifier, "classify", broken)
        result = await engine.handle_turn(user.id, "2")

        assert result.reply == replies.GENERIC_APOLOGY
        assert result.applied is False
        conversation = await store.get(first.conversation_id)
        assert conversation.state == "awaiting_confirmation"
        assert await db_session.scalar(select(func.count(Message.id))) == 2

    @pytest.mark.integration
    async def test_unexpected_error_after_reactivation_apologises_and_rearms(
        self, engine, scheduler, store, user, clock, monkeypatch
    ):
        first = await engine.handle_turn(user.id, "oi")
        clock.advance(60)

        def broken(text):
            raise RuntimeError("classifier bug")

        monkeypatch.setattr(engine.classifier, "classify", broken)
        result = await engine.handle_turn(user.id, "lista")

        assert result.reply == replies.GENERIC_APOLOGY
        assert result.applied is False
        assert result.conversation_id == first.conversation_id
        assert result.state == ConversationState.IDLE

        conversation = await store.get(first.conversation_id)
        assert conversation.state == "waiting_close"
        assert conversation.close_at == clock() + timedelta(seconds=180)

        clock.advance(180)
        assert (await scheduler.dispatch_due_jobs())["closed"] == 1
        assert (await store.get(first.conversation_id)).state == "closed"

    @pytest.mark.integration
    async def test_failed_schedule_close_is_caught_by_the_sweep(
        self, engine, scheduler, store, user, clock, monkeypatch
    ):
        async def broken_schedule(conversation_id):
            raise RuntimeError("db hiccup")

        monkeypatch.setattr(engine.scheduler, "schedule_close", broken_schedule)
        result = await engine.handle_turn(user.id, "oi")

        assert result.reply
        assert (await store.get(result.conversation_id)).state == "idle"

        monkeypatch.undo()
        clock.advance(179)
        assert await scheduler.sweep_due() == 0
        clock.advance(1)
        assert await scheduler.sweep_due() == 1
        assert (await store.get(result.conversation_id)).state == "closed"

    @pytest.mark.integration
    async def test_lost_race_keeps_messages_and_replies_stale(self, engine, store, user, db_session, monkeypatch):
        async def lost(*args, **kwargs):
            return False

        monkeypatch.setattr(store, "conditional_update", lost)
        result = await engine.handle_turn(user.id, "lista")

        assert result.applied is False
        assert result.reply == replies.STALE_TURN
        messages = (await db_session.execute(select(Message.content).order_by(Message.id))).scalars().all()
        assert messages == ["lista", replies.STALE_TURN]

    @pytest.mark.integration
    async def test_empty_message_gets_greeting(self, engine, user):
        result = await engine.handle_turn(user.id, "   ")

        assert result.reply == replies.GREETING
