"""Tests for the chat status machine."""
import pytest

from context import state_machine
from core.errors import InvalidChatTransitionError
from models.schemas import Chat, ChatStatus


def make_chat(status=ChatStatus.AUTO_RESPONDER, agent_id=None) -> Chat:
    return Chat(contact_id="593991112233", status=status, assigned_agent_id=agent_id)


class TestTransitions:
    def test_auto_to_pending(self):
        chat = state_machine.transition(make_chat(), ChatStatus.PENDING_ASSIGNMENT)
        assert chat.status == ChatStatus.PENDING_ASSIGNMENT
        assert chat.assigned_agent_id is None

    def test_pending_to_active_sets_agent(self):
        chat = make_chat(ChatStatus.PENDING_ASSIGNMENT)
        state_machine.transition(chat, ChatStatus.ACTIVE, "a1")
        assert chat.status == ChatStatus.ACTIVE
        assert chat.assigned_agent_id == "a1"

    def test_reassignment_keeps_active(self):
        chat = make_chat(ChatStatus.ACTIVE, "a1")
        state_machine.transition(chat, ChatStatus.ACTIVE, "a2")
        assert chat.assigned_agent_id == "a2"

    def test_release_clears_agent(self):
        chat = make_chat(ChatStatus.ACTIVE, "a1")
        state_machine.transition(chat, ChatStatus.AUTO_RESPONDER)
        assert chat.assigned_agent_id is None

    def test_active_cannot_go_back_to_pending(self):
        chat = make_chat(ChatStatus.ACTIVE, "a1")
        with pytest.raises(InvalidChatTransitionError):
            state_machine.transition(chat, ChatStatus.PENDING_ASSIGNMENT)
        assert chat.status == ChatStatus.ACTIVE

    def test_active_requires_agent(self):
        with pytest.raises(InvalidChatTransitionError):
            state_machine.transition(make_chat(), ChatStatus.ACTIVE)

    def test_transition_touches_updated_at(self):
        chat = make_chat()
        before = chat.updated_at
        state_machine.transition(chat, ChatStatus.PENDING_ASSIGNMENT)
        assert chat.updated_at >= before


class TestInvariant:
    @pytest.mark.parametrize("status,agent_id,ok", [
        (ChatStatus.ACTIVE, "a1", True),
        (ChatStatus.ACTIVE, None, False),
        (ChatStatus.AUTO_RESPONDER, None, True),
        (ChatStatus.AUTO_RESPONDER, "a1", False),
        (ChatStatus.PENDING_ASSIGNMENT, "a1", False),
    ])
    def test_check_invariant(self, status, agent_id, ok):
        assert state_machine.check_invariant(make_chat(status, agent_id)) is ok

    def test_normalize_active_without_agent(self):
        chat = state_machine.normalize(make_chat(ChatStatus.ACTIVE))
        assert chat.status == ChatStatus.AUTO_RESPONDER
        assert state_machine.check_invariant(chat)

    def test_normalize_auto_with_leftover_agent(self):
        chat = state_machine.normalize(make_chat(ChatStatus.AUTO_RESPONDER, "a1"))
        assert chat.assigned_agent_id is None

    def test_normalize_leaves_valid_active_alone(self):
        chat = state_machine.normalize(make_chat(ChatStatus.ACTIVE, "a1"))
        assert chat.status == ChatStatus.ACTIVE
        assert chat.assigned_agent_id == "a1"
