"""
End-to-end tests for the Router:
- dialogue scenarios from first contact to escalation and survey
- lease contention, human-engaged chats, media, channel outages
- inactivity timeout
"""
import asyncio
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from channels.notifier import WebSocketNotifier
from channels.presence import PresenceRegistry
from context import state_machine
from core import messages
from core.container import build_routing_container
from core.timers import INACTIVITY, RESPONSE
from models.schemas import (
    ChatStatus, DialogueState, DialogueStep, InboundMessage, MessageSender, SurveyRating,
)

from tests.conftest import CONTACT_ID, morning_clock


def inbound(text="", **kwargs) -> InboundMessage:
    return InboundMessage(contact_id=CONTACT_ID, text=text, **kwargs)


async def step_of(container) -> str:
    return (await container.state_store.get(CONTACT_ID)).step


class TestDialogueScenarios:
    @pytest.mark.asyncio
    async def test_first_contact_asked_for_name(self, container, channel):
        chat = await container.router.handle_inbound(inbound("hola"))

        assert chat.status == ChatStatus.AUTO_RESPONDER
        assert await step_of(container) == DialogueStep.ASK_FOR_NAME
        reply = channel.texts_to(CONTACT_ID)[-1]
        assert "nombre" in reply
        assert channel.typing

    @pytest.mark.asyncio
    async def test_name_with_digit_rejected(self, container, channel):
        await container.router.handle_inbound(inbound("hola"))
        chat = await container.router.handle_inbound(inbound("Juan1"))

        assert await step_of(container) == DialogueStep.ASK_FOR_NAME
        assert channel.texts_to(CONTACT_ID)[-1] == messages.INVALID_NAME
        assert chat.customer_name is None

    @pytest.mark.asyncio
    async def test_name_captured_and_greeted(self, container, channel, repo):
        await container.router.handle_inbound(inbound("hola"))
        await container.router.handle_inbound(inbound("Juan1"))
        await container.router.handle_inbound(inbound("Juan"))

        chat = await repo.find_chat_by_contact(CONTACT_ID)
        assert chat.customer_name == "Juan"
        assert await step_of(container) == DialogueStep.MAIN_MENU
        assert "Juan" in channel.texts_to(CONTACT_ID)[-1]

    @pytest.mark.asyncio
    async def test_escalation_without_agents_queues_chat(self, container, channel, repo, notifier):
        await container.state_store.set(CONTACT_ID, DialogueState(step=DialogueStep.MAIN_MENU.value))
        chat = await container.router.handle_inbound(inbound("2"))

        assert chat.status == ChatStatus.PENDING_ASSIGNMENT
        assert (await container.wait_queue.snapshot())[-1] == chat.id
        assert channel.texts_to(CONTACT_ID)[-1] == messages.HANDOFF_HOLDING
        assert (CONTACT_ID, 1.5) in channel.typing
        assert ("new_chat", chat.id) in notifier.events
        assert not container.runtime.timers.is_active(INACTIVITY, chat.id)

    @pytest.mark.asyncio
    async def test_queued_chat_taken_by_connecting_agent(self, container, agents):
        await container.state_store.set(CONTACT_ID, DialogueState(step=DialogueStep.MAIN_MENU.value))
        chat = await container.router.handle_inbound(inbound("2"))

        assigned = await container.scheduler.on_agent_connected("conn-1", agents["a1"])
        assert assigned.id == chat.id
        assert assigned.status == ChatStatus.ACTIVE
        assert assigned.assigned_agent_id == "a1"
        assert container.runtime.timers.is_active(RESPONSE, chat.id)
        assert await container.wait_queue.length() == 0

    @pytest.mark.asyncio
    async def test_unanswered_chat_returns_to_assistant(self, container, agents, channel, repo, settings):
        settings.routing.response_timeout_seconds = 0.05
        await container.state_store.set(CONTACT_ID, DialogueState(step=DialogueStep.MAIN_MENU.value))
        chat = await container.router.handle_inbound(inbound("2"))
        await container.scheduler.on_agent_connected("conn-1", agents["a1"])
        sent_before = len(channel.sent)

        await asyncio.sleep(0.2)
        released = await repo.find_chat_by_id(chat.id)
        assert released.status == ChatStatus.AUTO_RESPONDER
        assert released.assigned_agent_id is None
        assert len(channel.sent) == sent_before

    @pytest.mark.asyncio
    async def test_survey_rating_saved_and_state_reset(self, container, repo, notifier):
        await container.state_store.set(CONTACT_ID, DialogueState(step=DialogueStep.SURVEY.value))
        chat = await container.router.handle_inbound(inbound("3"))

        surveys = await repo.list_surveys(chat.id)
        assert [s.rating for s in surveys] == [SurveyRating.EXCELLENT]
        assert await container.state_store.get(CONTACT_ID) == DialogueState()
        assert "dashboard_invalidated" in notifier.names()

    @pytest.mark.asyncio
    async def test_farewell_starts_survey(self, container, channel):
        await container.state_store.set(CONTACT_ID, DialogueState(step=DialogueStep.MAIN_MENU.value))
        await container.router.handle_inbound(inbound("salir"))
        assert await step_of(container) == DialogueStep.SURVEY
        assert channel.texts_to(CONTACT_ID)[-1] == messages.SURVEY_QUESTION


class TestInboundHandling:
    @pytest.mark.asyncio
    async def test_message_persisted_and_unread_counted(self, container, repo, notifier):
        chat = await container.router.handle_inbound(inbound("hola", sender_name="Juanito"))

        stored = await repo.find_chat_by_id(chat.id)
        assert stored.unread_count == 1
        history = await repo.list_messages(chat.id)
        assert history[0].sender == MessageSender.CUSTOMER
        assert history[0].content == "hola"
        assert history[0].sender_name == "Juanito"
        assert history[-1].sender == MessageSender.BOT
        assert history[-1].sender_name == messages.ASSISTANT_NAME
        assert notifier.names()[0] == "new_message"

    @pytest.mark.asyncio
    async def test_lease_held_drops_message(self, container, repo, channel):
        await container.leases.acquire(CONTACT_ID)
        assert await container.router.handle_inbound(inbound("hola")) is None
        assert await repo.find_chat_by_contact(CONTACT_ID) is None
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_lease_released_after_processing(self, container):
        await container.router.handle_inbound(inbound("hola"))
        assert not await container.leases.is_held(CONTACT_ID)

    @pytest.mark.asyncio
    async def test_human_engaged_chat_gets_no_bot_reply(self, container, repo, channel):
        chat = await repo.create_chat(CONTACT_ID)
        state_machine.transition(chat, ChatStatus.ACTIVE, "a1")
        await repo.save_chat(chat)

        result = await container.router.handle_inbound(inbound("¿sigue ahí?"))
        assert result.status == ChatStatus.ACTIVE
        assert channel.sent == []
        assert (await repo.find_chat_by_id(chat.id)).unread_count == 1

    @pytest.mark.asyncio
    async def test_inconsistent_chat_normalized(self, container, repo, channel):
        chat = await repo.create_chat(CONTACT_ID)
        chat.status = ChatStatus.ACTIVE
        await repo.save_chat(chat)

        result = await container.router.handle_inbound(inbound("hola"))
        assert result.status == ChatStatus.AUTO_RESPONDER
        assert result.assigned_agent_id is None
        assert channel.sent

    @pytest.mark.asyncio
    async def test_media_without_caption_stored_with_placeholder(self, container, repo, channel):
        chat = await container.router.handle_inbound(
            inbound("", has_media=True, mime_type="image/jpeg"))

        history = await repo.list_messages(chat.id)
        assert history[0].content == messages.MEDIA_PLACEHOLDER
        assert history[0].mime_type == "image/jpeg"
        assert channel.sent == []
        assert await step_of(container) == DialogueStep.START

    @pytest.mark.asyncio
    async def test_channel_not_ready_hands_chat_to_human(self, container, repo, channel):
        channel.set_ready(False)
        chat = await container.router.handle_inbound(inbound("hola"))

        assert chat.status == ChatStatus.PENDING_ASSIGNMENT
        notes = [m.content for m in await repo.list_messages(chat.id) if m.sender == MessageSender.SYSTEM]
        assert messages.NOTE_CHANNEL_NOT_READY in notes

    @pytest.mark.asyncio
    async def test_engine_failure_apologises_and_escalates(self, container, channel, agents):
        await container.scheduler.on_agent_connected("conn-1", agents["a1"])
        container.engine.process = AsyncMock(side_effect=RuntimeError("db down"))

        chat = await container.router.handle_inbound(inbound("hola"))
        assert channel.texts_to(CONTACT_ID) == [messages.TECHNICAL_PROBLEM]
        assert chat.status == ChatStatus.ACTIVE
        assert chat.assigned_agent_id == "a1"
        assert not await container.leases.is_held(CONTACT_ID)

    @pytest.mark.asyncio
    async def test_reply_send_failure_does_not_escalate(self, container, channel):
        channel.fail_sends = True
        chat = await container.router.handle_inbound(inbound("hola"))
        assert chat.status == ChatStatus.AUTO_RESPONDER
        assert await step_of(container) == DialogueStep.ASK_FOR_NAME


class TestInactivityTimeout:
    @pytest.mark.asyncio
    async def test_text_message_starts_timer(self, container):
        chat = await container.router.handle_inbound(inbound("hola"))
        assert container.runtime.timers.is_active(INACTIVITY, chat.id)

    @pytest.mark.asyncio
    async def test_expired_session_reset(self, container, channel):
        chat = await container.router.handle_inbound(inbound("hola"))
        await container.router.on_inactivity_timeout(chat.id)

        assert channel.texts_to(CONTACT_ID)[-1] == messages.SESSION_EXPIRED
        assert await step_of(container) == DialogueStep.START

    @pytest.mark.asyncio
    async def test_nothing_sent_at_start_step(self, container, channel, repo):
        chat = await repo.create_chat(CONTACT_ID)
        await container.router.on_inactivity_timeout(chat.id)
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_skipped_for_human_engaged_chat(self, container, channel, repo):
        chat = await repo.create_chat(CONTACT_ID)
        state_machine.transition(chat, ChatStatus.PENDING_ASSIGNMENT)
        await repo.save_chat(chat)
        await container.state_store.set(CONTACT_ID, DialogueState(step=DialogueStep.MAIN_MENU.value))

        await container.router.on_inactivity_timeout(chat.id)
        assert channel.sent == []
        assert await step_of(container) == DialogueStep.MAIN_MENU

    @pytest.mark.asyncio
    async def test_skipped_while_lease_held(self, container, channel):
        chat = await container.router.handle_inbound(inbound("hola"))
        sent_before = len(channel.sent)
        await container.leases.acquire(CONTACT_ID)

        await container.router.on_inactivity_timeout(chat.id)
        assert len(channel.sent) == sent_before
        assert await step_of(container) == DialogueStep.ASK_FOR_NAME

    @pytest.mark.asyncio
    async def test_timer_fires_after_configured_delay(self, container, channel, settings):
        settings.routing.inactivity_timeout_seconds = 0.05
        await container.router.handle_inbound(inbound("hola"))
        await asyncio.sleep(0.2)
        assert channel.texts_to(CONTACT_ID)[-1] == messages.SESSION_EXPIRED


class DeadSocket:
    async def send_text(self, data: str):
        raise RuntimeError("socket closed")


class TestDashboardSockets:
    @pytest_asyncio.fixture
    async def ws_container(self, settings, kv_store, repo, channel):
        notifier = WebSocketNotifier(PresenceRegistry())
        c = build_routing_container(
            settings=settings,
            store=kv_store,
            repo=repo,
            channel=channel,
            notifier=notifier,
            clock=morning_clock,
        )
        yield c
        await c.stop()

    @pytest.mark.asyncio
    async def test_dead_dashboard_socket_does_not_block_routing(self, ws_container, channel):
        ws_container.notifier.attach("stale-tab", DeadSocket())

        await ws_container.router.handle_inbound(inbound("hola"))
        await ws_container.router.handle_inbound(inbound("Juan"))

        assert ws_container.notifier.connection_count == 0
        assert len(channel.texts_to(CONTACT_ID)) == 2
        assert await step_of(ws_container) == DialogueStep.MAIN_MENU
