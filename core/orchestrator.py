"""
Router — the central coordinator for inbound customer messages.

Flow for one inbound message of contact c:
  try-acquire lease(c)  ── held elsewhere → drop (at-most-once)
    → load/create Chat, normalize, touch
    → persist inbound message, bump unread, notify dashboards
    → channel not ready         → hand to a human
    → human engaged / pending   → stop
    → media without text        → stop
    → restart inactivity timer, load DialogueState, run engine
    → apply outcome (name, survey, state)
    → Reply / SurveyStarted → typing + send
      Escalate              → holding message + auto-assign
  release lease(c)

Any failure while running or applying the dialogue step apologises to the
contact and escalates the chat instead of leaving it stalled.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from channels.base import ChannelError, MessagingChannel, typing_duration
from channels.notifier import Notifier
from config.settings import RoutingConfig
from context import state_machine
from context.lease import LeaseManager
from context.state_store import DialogueStateStore
from core import messages
from core.assignment import AssignmentScheduler
from core.engine import ConversationEngine, StepOutcome
from core.outbox import ChatOutbox
from core.runtime import RoutingRuntime
from core.timers import INACTIVITY
from database.repository_base import ChatRepository
from models.schemas import (
    Chat, ChatMessage, ChatStatus, DialogueStep, Escalate, InboundMessage,
    MessageSender, Reply, SurveyStarted,
)

logger = structlog.get_logger()

ESCALATION_TYPING_SECONDS = 1.5


class Router:

    def __init__(
        self,
        repo: ChatRepository,
        state_store: DialogueStateStore,
        leases: LeaseManager,
        engine: ConversationEngine,
        scheduler: AssignmentScheduler,
        channel: MessagingChannel,
        outbox: ChatOutbox,
        notifier: Notifier,
        runtime: RoutingRuntime,
        config: RoutingConfig,
    ):
        self._repo = repo
        self._states = state_store
        self._leases = leases
        self._engine = engine
        self._scheduler = scheduler
        self._channel = channel
        self._outbox = outbox
        self._notifier = notifier
        self._runtime = runtime
        self._config = config

    # ── Inbound ───────────────────────────────────────────

    async def handle_inbound(self, inbound: InboundMessage) -> Optional[Chat]:
        contact_id = inbound.contact_id
        lease = await self._leases.acquire(contact_id, ttl_seconds=self._config.lease_ttl_seconds)
        if lease is None:
            logger.info("inbound_dropped_lease_held", contact_id=contact_id)
            return None
        try:
            return await self._process(inbound)
        finally:
            await self._leases.release(lease)

    async def _process(self, inbound: InboundMessage) -> Chat:
        chat = await self._load_chat(inbound.contact_id)
        text = inbound.text.strip()

        content = text or (messages.MEDIA_PLACEHOLDER if inbound.has_media else "")
        message = ChatMessage(
            chat_id=chat.id,
            sender=MessageSender.CUSTOMER,
            sender_id=inbound.contact_id,
            sender_name=chat.customer_name or inbound.sender_name or None,
            content=content,
            mime_type=inbound.mime_type,
        )
        await self._repo.add_message(message)
        await self._repo.increment_unread(chat.id)
        await self._notifier.new_message(chat, message)
        logger.info("inbound_received",
                    chat_id=chat.id,
                    contact_id=chat.contact_id,
                    status=chat.status.value,
                    has_media=inbound.has_media)

        if not self._channel.is_ready and chat.status == ChatStatus.AUTO_RESPONDER:
            logger.warning("channel_not_ready_escalating", chat_id=chat.id)
            await self._outbox.note(chat, messages.NOTE_CHANNEL_NOT_READY)
            return await self._scheduler.auto_assign(chat.id)

        if chat.is_human_engaged:
            return chat

        if not text:
            return chat

        self._runtime.timers.start(
            INACTIVITY, chat.id, self._config.inactivity_timeout_seconds,
            self.on_inactivity_timeout, chat.id,
        )

        try:
            state = await self._states.get(chat.contact_id)
            outcome = await self._engine.process(state, chat, text)
            chat = await self._apply(chat, outcome)
        except Exception as e:
            logger.error("dialogue_step_failed", chat_id=chat.id, error=str(e), exc_info=True)
            return await self._force_escalate(chat)

        return await self._respond(chat, outcome)

    async def _load_chat(self, contact_id: str) -> Chat:
        chat = await self._repo.find_chat_by_contact(contact_id)
        if chat is None:
            return await self._repo.create_chat(contact_id)
        async with self._runtime.chat_lock(chat.id):
            chat = await self._repo.find_chat_by_id(chat.id) or chat
            state_machine.normalize(chat)
            chat.updated_at = datetime.now(timezone.utc)
            return await self._repo.save_chat(chat)

    # ── Outcome ───────────────────────────────────────────

    async def _apply(self, chat: Chat, outcome: StepOutcome) -> Chat:
        if outcome.captured_name:
            async with self._runtime.chat_lock(chat.id):
                chat = await self._repo.find_chat_by_id(chat.id) or chat
                chat.customer_name = outcome.captured_name
                chat = await self._repo.save_chat(chat)
            logger.info("customer_name_captured", chat_id=chat.id)

        if outcome.survey is not None:
            await self._repo.save_survey(outcome.survey)
            await self._notifier.dashboard_invalidated()

        if outcome.reset_state:
            await self._states.reset(chat.contact_id)
        else:
            await self._states.set(chat.contact_id, outcome.state)
        return chat

    async def _respond(self, chat: Chat, outcome: StepOutcome) -> Chat:
        result = outcome.result
        if isinstance(result, Escalate):
            return await self._escalate(chat)

        if isinstance(result, (Reply, SurveyStarted)):
            try:
                await self._outbox.send_bot(chat, result.text, typing_seconds=typing_duration(result.text))
            except ChannelError as e:
                logger.error("reply_send_failed", chat_id=chat.id, error=str(e))
        return chat

    async def _escalate(self, chat: Chat) -> Chat:
        self._runtime.timers.cancel(INACTIVITY, chat.id)
        try:
            await self._outbox.send_bot(chat, messages.HANDOFF_HOLDING, typing_seconds=ESCALATION_TYPING_SECONDS)
        except ChannelError as e:
            logger.error("handoff_message_send_failed", chat_id=chat.id, error=str(e))
        await self._notifier.new_chat(chat)
        await self._outbox.note(chat, messages.NOTE_HANDOFF_REQUESTED)
        logger.info("chat_escalated", chat_id=chat.id)
        return await self._scheduler.auto_assign(chat.id)

    async def _force_escalate(self, chat: Chat) -> Chat:
        self._runtime.timers.cancel(INACTIVITY, chat.id)
        try:
            await self._outbox.send_bot(chat, messages.TECHNICAL_PROBLEM)
        except ChannelError as e:
            logger.error("apology_send_failed", chat_id=chat.id, error=str(e))
        return await self._scheduler.auto_assign(chat.id)

    # ── Inactivity timeout ────────────────────────────────

    async def on_inactivity_timeout(self, chat_id: str) -> None:
        chat = await self._repo.find_chat_by_id(chat_id)
        if chat is None:
            return
        lease = await self._leases.acquire(chat.contact_id, ttl_seconds=self._config.lease_ttl_seconds)
        if lease is None:
            logger.info("inactivity_timeout_skipped_lease_held", chat_id=chat_id)
            return
        try:
            chat = await self._repo.find_chat_by_id(chat_id)
            if chat is None or chat.status != ChatStatus.AUTO_RESPONDER:
                return
            state = await self._states.get(chat.contact_id)
            if state.step == DialogueStep.START:
                return
            logger.info("session_expired", chat_id=chat_id, step=state.step)
            try:
                await self._outbox.send_bot(chat, messages.SESSION_EXPIRED)
            except ChannelError as e:
                logger.warning("session_expired_send_failed", chat_id=chat_id, error=str(e))
            await self._states.reset(chat.contact_id)
        finally:
            await self._leases.release(lease)
