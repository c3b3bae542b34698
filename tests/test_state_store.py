"""Tests for the per-contact dialogue state store."""
import json
import pytest

from context.state_store import STATE_TTL_SECONDS, DialogueStateStore, state_key
from database.kv_store import InMemoryKeyValueStore
from models.schemas import CompanyDebts, DialogueState, DialogueStep

from tests.conftest import CONTACT_ID


@pytest.fixture
def store(fake_clock) -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore(clock=fake_clock)


@pytest.fixture
def states(store) -> DialogueStateStore:
    return DialogueStateStore(store)


class TestDialogueStateStore:
    @pytest.mark.asyncio
    async def test_fresh_contact_gets_default_and_it_is_written(self, states, store):
        state = await states.get(CONTACT_ID)
        assert state == DialogueState()
        assert state.step == DialogueStep.START
        assert await store.get(state_key(CONTACT_ID)) is not None

    @pytest.mark.asyncio
    async def test_two_reads_see_the_same_value(self, states, store):
        await states.get(CONTACT_ID)
        first = await store.get(state_key(CONTACT_ID))
        await states.get(CONTACT_ID)
        assert await store.get(state_key(CONTACT_ID)) == first

    @pytest.mark.asyncio
    async def test_set_then_get(self, states):
        state = DialogueState(
            step=DialogueStep.MAIN_MENU.value,
            terms_accepted=True,
            national_id="0912345678",
            companies=[CompanyDebts(header="JAHER")],
        )
        await states.set(CONTACT_ID, state)
        assert await states.get(CONTACT_ID) == state

    @pytest.mark.asyncio
    async def test_expired_state_falls_back_to_default(self, states, fake_clock):
        await states.set(CONTACT_ID, DialogueState(step=DialogueStep.AWAIT_ID.value))
        fake_clock.advance(STATE_TTL_SECONDS + 1)
        assert (await states.get(CONTACT_ID)).step == DialogueStep.START

    @pytest.mark.asyncio
    async def test_write_refreshes_ttl(self, states, fake_clock):
        await states.set(CONTACT_ID, DialogueState(step=DialogueStep.AWAIT_ID.value))
        fake_clock.advance(STATE_TTL_SECONDS - 10)
        await states.set(CONTACT_ID, DialogueState(step=DialogueStep.DISCLAIMER.value))
        fake_clock.advance(20)
        assert (await states.get(CONTACT_ID)).step == DialogueStep.DISCLAIMER

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '{"terms_accepted": "maybe"}'])
    async def test_undecodable_state_replaced(self, states, store, raw):
        await store.set(state_key(CONTACT_ID), raw)
        state = await states.get(CONTACT_ID)
        assert state == DialogueState()
        assert json.loads(await store.get(state_key(CONTACT_ID)))["step"] == "START"

    @pytest.mark.asyncio
    async def test_partial_payload_merged_over_defaults(self, states, store):
        await store.set(state_key(CONTACT_ID), json.dumps({"step": "MAIN_MENU"}))
        state = await states.get(CONTACT_ID)
        assert state.step == DialogueStep.MAIN_MENU
        assert state.terms_accepted is False
        assert state.companies == []

    @pytest.mark.asyncio
    async def test_unknown_step_is_tolerated(self, states, store):
        await store.set(state_key(CONTACT_ID), json.dumps({"step": "OLD_FLOW_STEP"}))
        assert (await states.get(CONTACT_ID)).step == "OLD_FLOW_STEP"

    @pytest.mark.asyncio
    async def test_reset(self, states):
        await states.set(CONTACT_ID, DialogueState(step=DialogueStep.SURVEY.value, terms_accepted=True))
        reset = await states.reset(CONTACT_ID)
        assert reset == DialogueState()
        assert await states.get(CONTACT_ID) == DialogueState()
