"""
Assignment Scheduler — hands chats to human agents.

Provides:
- auto_assign: least-loaded connected agent, or the wait queue when nobody is online
- assign: manual or automatic assignment with validation
- on_agent_connected / on_agent_disconnected: presence changes, queue drain
- response timeout: reassign (or release) a chat the agent did not answer
- send_agent_message, add_note, release_chat, unassign_chat, mark_read: agent actions
- release_stale_chats: periodic cleanup of forgotten ACTIVE chats

Every write to a chat's status or assignee happens under that chat's lock
from the runtime. Public methods take the lock and call the *_locked
helpers; the lock is not reentrant, so helpers never take it again.
Work that needs the contact lease (survey prompt, farewell) runs after
the chat lock is released.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from channels.base import ChannelError
from channels.notifier import Notifier
from config.settings import RoutingConfig
from context import state_machine
from context.lease import LeaseManager
from context.state_store import DialogueStateStore
from core import messages
from core.errors import (
    AgentNotConnectedError, AgentNotFoundError, ChatNotAssignedError, ChatNotFoundError,
)
from core.outbox import ChatOutbox
from core.runtime import RoutingRuntime
from core.timers import INACTIVITY, RESPONSE
from database.repository_base import ChatRepository
from job_queue.wait_queue import WaitQueue
from models.schemas import (
    Agent, AgentRole, Chat, ChatMessage, ChatNote, ChatStatus, DialogueStep,
)

logger = structlog.get_logger()

# How long agent-side actions wait for a contact's lease before giving up
# on touching the dialogue state.
AGENT_ACTION_LEASE_WAIT_SECONDS = 5.0


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class AssignmentScheduler:

    def __init__(
        self,
        repo: ChatRepository,
        wait_queue: WaitQueue,
        state_store: DialogueStateStore,
        leases: LeaseManager,
        outbox: ChatOutbox,
        notifier: Notifier,
        runtime: RoutingRuntime,
        config: RoutingConfig,
    ):
        self._repo = repo
        self._queue = wait_queue
        self._states = state_store
        self._leases = leases
        self._outbox = outbox
        self._notifier = notifier
        self._runtime = runtime
        self._config = config

    @property
    def _presence(self):
        return self._runtime.presence

    @property
    def _timers(self):
        return self._runtime.timers

    async def _load(self, chat_id: str) -> Chat:
        chat = await self._repo.find_chat_by_id(chat_id)
        if chat is None:
            raise ChatNotFoundError(chat_id)
        return chat

    # ── Agent selection ───────────────────────────────────

    async def _pick_agent(self, exclude: Optional[str] = None) -> Optional[str]:
        """Connected agent with the fewest ACTIVE chats; ties go to connection order."""
        best_id, best_load = None, None
        for agent_id in self._presence.connected_agent_ids(AgentRole.AGENT):
            if agent_id == exclude:
                continue
            load = await self._repo.count_active_chats(agent_id)
            if best_load is None or load < best_load:
                best_id, best_load = agent_id, load
        return best_id

    # ── Auto / manual assignment ──────────────────────────

    async def auto_assign(self, chat_id: str) -> Chat:
        async with self._runtime.chat_lock(chat_id):
            return await self._auto_assign_locked(await self._load(chat_id))

    async def _auto_assign_locked(self, chat: Chat, exclude: Optional[str] = None) -> Chat:
        agent_id = await self._pick_agent(exclude)
        if agent_id is not None:
            return await self._assign_locked(chat, agent_id, is_auto=True)

        if chat.status == ChatStatus.PENDING_ASSIGNMENT:
            logger.info("chat_already_pending", chat_id=chat.id)
            return chat

        self._timers.cancel(INACTIVITY, chat.id)
        state_machine.transition(chat, ChatStatus.PENDING_ASSIGNMENT)
        chat = await self._repo.save_chat(chat)
        await self._queue.push(chat.id)
        await self._outbox.note(chat, messages.NOTE_QUEUED)
        await self._notifier.new_chat(chat)
        logger.info("chat_queued_no_agents", chat_id=chat.id)
        return chat

    async def assign(self, chat_id: str, agent_id: str, is_auto: bool = False) -> Chat:
        async with self._runtime.chat_lock(chat_id):
            return await self._assign_locked(await self._load(chat_id), agent_id, is_auto)

    async def _assign_locked(self, chat: Chat, agent_id: str, is_auto: bool) -> Chat:
        agent = await self._repo.find_agent_by_id(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        if not is_auto and not self._presence.is_connected(agent_id):
            raise AgentNotConnectedError(agent_id)

        self._timers.cancel(INACTIVITY, chat.id)
        state_machine.transition(chat, ChatStatus.ACTIVE, agent.id)
        chat = await self._repo.save_chat(chat)

        await self._notifier.assigned_chat(chat)
        await self._notifier.agent_assignment(agent.id, chat)
        await self._outbox.note(chat, messages.note_assigned(agent.display_name, is_auto))
        self._timers.start(
            RESPONSE, chat.id, self._config.response_timeout_seconds,
            self._on_response_timeout, chat.id, agent.id,
        )
        logger.info("chat_assigned", chat_id=chat.id, agent_id=agent.id, is_auto=is_auto)
        return chat

    # ── Presence ──────────────────────────────────────────

    async def on_agent_connected(self, connection_id: str, agent: Agent) -> Optional[Chat]:
        """Register the connection; an agent (not admin) takes the oldest queued chat."""
        self._presence.register(connection_id, agent)
        await self._notifier.presence_update(self._presence.connected())

        if agent.role != AgentRole.AGENT:
            return None
        chat_id = await self._queue.pop()
        if chat_id is None:
            return None

        async with self._runtime.chat_lock(chat_id):
            chat = await self._repo.find_chat_by_id(chat_id)
            if chat is None or chat.status != ChatStatus.PENDING_ASSIGNMENT:
                logger.info("queued_chat_skipped", chat_id=chat_id,
                            status=chat.status.value if chat else None)
                return None
            try:
                return await self._assign_locked(chat, agent.id, is_auto=True)
            except Exception as e:
                logger.error("queued_chat_assign_failed", chat_id=chat_id, agent_id=agent.id, error=str(e))
                await self._queue.push(chat_id)
                raise

    async def on_agent_disconnected(self, connection_id: str) -> None:
        if self._presence.unregister(connection_id) is not None:
            await self._notifier.presence_update(self._presence.connected())

    # ── Response timeout ──────────────────────────────────

    async def _on_response_timeout(self, chat_id: str, agent_id: str) -> None:
        async with self._runtime.chat_lock(chat_id):
            chat = await self._repo.find_chat_by_id(chat_id)
            if chat is None or chat.status != ChatStatus.ACTIVE or chat.assigned_agent_id != agent_id:
                logger.info("response_timeout_stale", chat_id=chat_id, agent_id=agent_id)
                return

            logger.info("response_timeout", chat_id=chat_id, agent_id=agent_id)
            next_agent = await self._pick_agent(exclude=agent_id)
            if next_agent is not None:
                await self._outbox.note(chat, messages.NOTE_RESPONSE_TIMEOUT)
                await self._assign_locked(chat, next_agent, is_auto=True)
                return
            await self._release_locked(chat, messages.NOTE_RELEASED_BY_TIMEOUT)

    # ── Agent actions ─────────────────────────────────────

    async def send_agent_message(self, chat_id: str, agent_id: str, content: str) -> ChatMessage:
        async with self._runtime.chat_lock(chat_id):
            chat = await self._load(chat_id)
            if chat.status != ChatStatus.ACTIVE or chat.assigned_agent_id != agent_id:
                raise ChatNotAssignedError(chat_id, agent_id)
            self._timers.cancel(RESPONSE, chat_id)
            chat.updated_at = datetime.now(timezone.utc)
            chat = await self._repo.save_chat(chat)

        agent = await self._repo.find_agent_by_id(agent_id)
        agent_name = agent.first_name if agent and agent.first_name else "Agente"
        try:
            return await self._outbox.send_agent(chat, agent_id, agent_name, content)
        except ChannelError as e:
            logger.error("agent_message_send_failed", chat_id=chat_id, error=str(e))
            await self._outbox.note(chat, messages.NOTE_SEND_FAILED)
            raise

    async def add_note(self, chat_id: str, agent_id: str, content: str) -> ChatNote:
        """Internal note for the team; the contact never sees it."""
        chat = await self._load(chat_id)
        agent = await self._repo.find_agent_by_id(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        note = await self._repo.add_note(ChatNote(
            chat_id=chat.id,
            author_id=agent.id,
            author_name=agent.display_name,
            content=content.strip(),
        ))
        await self._notifier.new_note(chat, note)
        logger.info("chat_note_added", chat_id=chat.id, agent_id=agent.id)
        return note

    async def release_chat(self, chat_id: str, send_survey: bool = True) -> Chat:
        async with self._runtime.chat_lock(chat_id):
            chat = await self._load(chat_id)
            agent_name = "un agente"
            if chat.assigned_agent_id:
                agent = await self._repo.find_agent_by_id(chat.assigned_agent_id)
                if agent and agent.first_name:
                    agent_name = agent.first_name
            chat = await self._release_locked(chat, messages.note_released(agent_name))

        if send_survey:
            await self._start_agent_survey(chat)
        return chat

    async def unassign_chat(self, chat_id: str) -> Chat:
        async with self._runtime.chat_lock(chat_id):
            chat = await self._release_locked(await self._load(chat_id), messages.NOTE_UNASSIGNED)

        async with self._leases.hold(chat.contact_id, wait_seconds=AGENT_ACTION_LEASE_WAIT_SECONDS) as lease:
            if lease is None:
                logger.warning("unassign_state_reset_skipped", chat_id=chat.id)
            else:
                await self._states.reset(chat.contact_id)
        await self._send_quietly(chat, messages.FAREWELL)
        return chat

    async def mark_read(self, chat_id: str) -> int:
        chat = await self._load(chat_id)
        marked = await self._repo.mark_messages_read(chat.id)
        await self._repo.reset_unread(chat.id)
        logger.info("chat_marked_read", chat_id=chat.id, messages=marked)
        return marked

    async def release_stale_chats(self, max_age_seconds: float) -> int:
        """Release ACTIVE chats untouched for max_age_seconds, without a survey."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
        released = 0
        for candidate in await self._repo.find_stale_active_chats(cutoff):
            try:
                async with self._runtime.chat_lock(candidate.id):
                    chat = await self._repo.find_chat_by_id(candidate.id)
                    if chat is None or chat.status != ChatStatus.ACTIVE:
                        continue
                    if _as_aware(chat.updated_at) >= cutoff:
                        continue
                    await self._release_locked(chat, messages.NOTE_RELEASED_STALE)
                    released += 1
            except Exception as e:
                logger.error("stale_chat_release_failed", chat_id=candidate.id, error=str(e))
        if released:
            logger.info("stale_chats_released", count=released)
        return released

    # ── Release internals ─────────────────────────────────

    async def _release_locked(self, chat: Chat, note: str) -> Chat:
        self._timers.cancel(RESPONSE, chat.id)
        previous_agent = chat.assigned_agent_id
        state_machine.transition(chat, ChatStatus.AUTO_RESPONDER)
        chat = await self._repo.save_chat(chat)
        await self._notifier.released_chat(chat)
        await self._outbox.note(chat, note)
        logger.info("chat_released", chat_id=chat.id, agent_id=previous_agent)
        return chat

    async def _start_agent_survey(self, chat: Chat) -> None:
        async with self._leases.hold(chat.contact_id, wait_seconds=AGENT_ACTION_LEASE_WAIT_SECONDS) as lease:
            if lease is None:
                logger.warning("survey_skipped_lease_held", chat_id=chat.id)
                return
            if not await self._send_quietly(chat, messages.AGENT_SURVEY_QUESTION):
                return
            state = await self._states.get(chat.contact_id)
            state.step = DialogueStep.SURVEY.value
            await self._states.set(chat.contact_id, state)

    async def _send_quietly(self, chat: Chat, text: str) -> bool:
        try:
            await self._outbox.send_bot(chat, text)
            return True
        except ChannelError as e:
            logger.warning("bot_message_send_failed", chat_id=chat.id, error=str(e))
            return False
