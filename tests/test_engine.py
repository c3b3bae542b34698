"""Tests for ConversationEngine — the menu-driven dialogue FSM."""
import pytest
from datetime import datetime

from core import messages
from core.engine import (
    EXIT_KEYWORDS, FAREWELL_KEYWORDS, ConversationEngine, classify_survey,
)
from models.schemas import (
    Chat, DialogueState, DialogueStep, Escalate, Reply, SurveyRating, SurveyStarted,
)

from tests.conftest import CONTACT_ID, DEBTOR_ID, morning_clock


@pytest.fixture
def engine(repo) -> ConversationEngine:
    return ConversationEngine(repo, clock=morning_clock)


@pytest.fixture
def chat() -> Chat:
    return Chat(contact_id=CONTACT_ID)


@pytest.fixture
def named_chat() -> Chat:
    return Chat(contact_id=CONTACT_ID, customer_name="Juan")


def at(step: DialogueStep, **kwargs) -> DialogueState:
    return DialogueState(step=step.value, **kwargs)


class TestGreeting:
    @pytest.mark.parametrize("hour,expected", [
        (4, "Buenas noches"),
        (5, "Buenos días"),
        (11, "Buenos días"),
        (12, "Buenas tardes"),
        (18, "Buenas tardes"),
        (19, "Buenas noches"),
    ])
    def test_time_greeting(self, hour, expected):
        assert messages.time_greeting(datetime(2026, 3, 2, hour, 0)) == expected

    def test_menu_lists_both_options(self):
        menu = messages.main_menu(morning_clock(), "Juan")
        assert "Juan" in menu
        assert "1️⃣ Consultar Deudas" in menu
        assert "2️⃣ Hablar con un asesor" in menu


class TestStartAndName:
    @pytest.mark.asyncio
    async def test_start_without_name_asks_for_it(self, engine, chat):
        outcome = await engine.process(DialogueState(), chat, "hola")
        assert outcome.state.step == DialogueStep.ASK_FOR_NAME
        assert isinstance(outcome.result, Reply)
        assert "Buenos días" in outcome.result.text
        assert "nombre" in outcome.result.text

    @pytest.mark.asyncio
    async def test_start_with_name_goes_to_menu(self, engine, named_chat):
        outcome = await engine.process(DialogueState(), named_chat, "hola")
        assert outcome.state.step == DialogueStep.MAIN_MENU
        assert "Juan" in outcome.result.text

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["Juan1", "Jo", "  ", "4ndrea"])
    async def test_invalid_name_rejected(self, engine, chat, text):
        outcome = await engine.process(at(DialogueStep.ASK_FOR_NAME), chat, text)
        assert outcome.state.step == DialogueStep.ASK_FOR_NAME
        assert outcome.result == Reply(messages.INVALID_NAME)
        assert outcome.captured_name is None

    @pytest.mark.asyncio
    async def test_valid_name_captured(self, engine, chat):
        outcome = await engine.process(at(DialogueStep.ASK_FOR_NAME), chat, "  Juan ")
        assert outcome.captured_name == "Juan"
        assert outcome.state.step == DialogueStep.MAIN_MENU
        assert "Juan" in outcome.result.text


class TestMainMenu:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["1", "quiero consultar", "mi DEUDA"])
    async def test_consult_without_terms_shows_disclaimer(self, engine, named_chat, text):
        outcome = await engine.process(at(DialogueStep.MAIN_MENU), named_chat, text)
        assert outcome.state.step == DialogueStep.DISCLAIMER
        assert outcome.result == Reply(messages.DISCLAIMER)

    @pytest.mark.asyncio
    async def test_consult_with_terms_asks_for_id(self, engine, named_chat):
        state = at(DialogueStep.MAIN_MENU, terms_accepted=True)
        outcome = await engine.process(state, named_chat, "1")
        assert outcome.state.step == DialogueStep.AWAIT_ID
        assert outcome.result == Reply(messages.ASK_NATIONAL_ID)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["2", "hablar con un asesor", "Agente por favor"])
    async def test_advisor_escalates(self, engine, named_chat, text):
        outcome = await engine.process(at(DialogueStep.MAIN_MENU), named_chat, text)
        assert isinstance(outcome.result, Escalate)
        assert outcome.state.step == DialogueStep.MAIN_MENU

    @pytest.mark.asyncio
    async def test_unrecognized_option(self, engine, named_chat):
        outcome = await engine.process(at(DialogueStep.MAIN_MENU), named_chat, "pizza")
        assert outcome.state.step == DialogueStep.MAIN_MENU
        assert outcome.result.text.startswith(messages.UNRECOGNIZED_OPTION)


class TestDisclaimer:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["Sí", "si", "ACEPTO", "ok"])
    async def test_accept(self, engine, chat, text):
        outcome = await engine.process(at(DialogueStep.DISCLAIMER), chat, text)
        assert outcome.state.terms_accepted is True
        assert outcome.state.step == DialogueStep.AWAIT_ID
        assert outcome.result == Reply(messages.TERMS_ACCEPTED)

    @pytest.mark.asyncio
    async def test_reject(self, engine, chat):
        outcome = await engine.process(at(DialogueStep.DISCLAIMER), chat, "No")
        assert outcome.state.terms_accepted is False
        assert outcome.state.step == DialogueStep.MAIN_MENU
        assert outcome.result.text.startswith(messages.PRIVACY_NOTICE)

    @pytest.mark.asyncio
    async def test_unclear_answer_reprompts(self, engine, chat):
        outcome = await engine.process(at(DialogueStep.DISCLAIMER), chat, "tal vez")
        assert outcome.state.step == DialogueStep.DISCLAIMER
        assert outcome.result == Reply(messages.DISCLAIMER_UNCLEAR)


class TestAwaitId:
    @pytest.mark.asyncio
    async def test_short_id_reprompts(self, engine, named_chat):
        state = at(DialogueStep.AWAIT_ID, terms_accepted=True)
        outcome = await engine.process(state, named_chat, " 1234 ")
        assert outcome.state.step == DialogueStep.AWAIT_ID
        assert outcome.result == Reply(messages.NATIONAL_ID_TOO_SHORT)

    @pytest.mark.asyncio
    async def test_unknown_client(self, engine, named_chat):
        state = at(DialogueStep.AWAIT_ID, terms_accepted=True)
        outcome = await engine.process(state, named_chat, "0999999999")
        assert outcome.state.step == DialogueStep.MAIN_MENU
        assert "0999999999" in outcome.result.text
        assert outcome.state.national_id is None

    @pytest.mark.asyncio
    async def test_client_with_debt_gets_statement(self, engine, named_chat):
        state = at(DialogueStep.AWAIT_ID, terms_accepted=True)
        outcome = await engine.process(state, named_chat, DEBTOR_ID)
        text = outcome.result.text
        assert outcome.state.step == DialogueStep.MAIN_MENU
        assert outcome.state.national_id == DEBTOR_ID
        assert [c.header for c in outcome.state.companies] == ["BANCO PICHINCHA", "JAHER"]
        assert "Hola Juan Pérez" in text
        assert "💰 Deuda con *BANCO PICHINCHA*:" in text
        assert "Valor Liquidación: $980.00" in text
        assert "Deuda al corte: $310.26" in text
        assert messages.DEBT_TIP in text

    @pytest.mark.asyncio
    async def test_client_without_debt_gets_good_news(self, engine, named_chat):
        state = at(DialogueStep.AWAIT_ID, terms_accepted=True)
        outcome = await engine.process(state, named_chat, "0987654321")
        assert "buenas noticias" in outcome.result.text
        assert "Juan" in outcome.result.text
        assert outcome.state.companies == []


class TestSurvey:
    @pytest.mark.parametrize("text,rating", [
        ("1", SurveyRating.BAD),
        ("Mala", SurveyRating.BAD),
        ("2", SurveyRating.REGULAR),
        ("3", SurveyRating.EXCELLENT),
        ("excelente!!", SurveyRating.EXCELLENT),
        ("muy buena atención", None),
    ])
    def test_classify(self, text, rating):
        assert classify_survey(text) == rating

    @pytest.mark.asyncio
    async def test_rating_resets_state(self, engine, named_chat):
        outcome = await engine.process(at(DialogueStep.SURVEY), named_chat, "3")
        assert outcome.reset_state is True
        assert outcome.state == DialogueState()
        assert outcome.survey.rating == SurveyRating.EXCELLENT
        assert outcome.survey.comment is None
        assert outcome.survey.chat_id == named_chat.id
        assert outcome.result == Reply(messages.SURVEY_THANKS)

    @pytest.mark.asyncio
    async def test_free_text_stored_as_comment(self, engine, named_chat):
        outcome = await engine.process(at(DialogueStep.SURVEY), named_chat, "todo bien gracias")
        assert outcome.survey.rating is None
        assert outcome.survey.comment == "todo bien gracias"


class TestExitKeywords:
    @pytest.mark.asyncio
    async def test_menu_keyword_in_menu_keeps_state(self, engine, named_chat):
        state = at(DialogueStep.MAIN_MENU, terms_accepted=True)
        outcome = await engine.process(state, named_chat, "MENU")
        assert outcome.state == state
        assert "Juan" in outcome.result.text

    @pytest.mark.asyncio
    async def test_menu_keyword_elsewhere_resets_to_menu(self, engine, named_chat):
        state = at(DialogueStep.AWAIT_ID, terms_accepted=True)
        outcome = await engine.process(state, named_chat, "menu")
        assert outcome.state.step == DialogueStep.MAIN_MENU
        assert outcome.state.terms_accepted is False
        assert outcome.result.text.startswith(messages.RESET_NOTICE)

    @pytest.mark.asyncio
    async def test_farewell_starts_survey(self, engine, named_chat):
        outcome = await engine.process(at(DialogueStep.DISCLAIMER), named_chat, "Chao")
        assert outcome.state.step == DialogueStep.SURVEY
        assert outcome.result == SurveyStarted(messages.SURVEY_QUESTION)

    @pytest.mark.asyncio
    async def test_keyword_must_match_exactly(self, engine, named_chat):
        outcome = await engine.process(at(DialogueStep.DISCLAIMER), named_chat, "no quiero salir")
        assert outcome.state.step == DialogueStep.DISCLAIMER

    @pytest.mark.asyncio
    @pytest.mark.parametrize("step", list(DialogueStep))
    @pytest.mark.parametrize("keyword", sorted(EXIT_KEYWORDS))
    async def test_every_step_handles_every_keyword(self, engine, named_chat, step, keyword):
        outcome = await engine.process(at(step), named_chat, keyword)
        assert isinstance(outcome.result, (Reply, SurveyStarted))
        if keyword in FAREWELL_KEYWORDS:
            assert outcome.state.step == DialogueStep.SURVEY
        else:
            assert outcome.state.step == DialogueStep.MAIN_MENU


class TestRecovery:
    @pytest.mark.asyncio
    async def test_unknown_step_restarts_at_menu(self, engine, named_chat):
        outcome = await engine.process(DialogueState(step="LEGACY_STEP"), named_chat, "hola")
        assert outcome.state.step == DialogueStep.MAIN_MENU
        assert outcome.result.text.startswith(messages.CONFUSED_RESTART)

    @pytest.mark.asyncio
    async def test_input_state_not_mutated(self, engine, chat):
        state = at(DialogueStep.DISCLAIMER)
        await engine.process(state, chat, "si")
        assert state.step == DialogueStep.DISCLAIMER
        assert state.terms_accepted is False
