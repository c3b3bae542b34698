"""
Conversation Engine — menu-driven dialogue of the Kika assistant.

A finite state machine over DialogueStep. Each call takes the contact's
current DialogueState, the chat and the raw text, and returns a
StepOutcome describing the next state and what the router should do:

  Reply(text)          send text, stay in the automated dialogue
  SurveyStarted(text)  send the rating prompt, next message is a rating
  Escalate()           hand the chat over to a human agent

The engine never writes. Captured names, survey records and state resets
travel in the outcome and the router applies them under the contact lease.

Flow:
  normalize text
    → global exit keywords (menu / farewell / reset)
    → step handler from the FSM table (unknown steps → recovery handler)
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from core import messages
from core.debt_summary import build_debt_summary
from database.repository_base import ChatRepository
from models.schemas import (
    Chat, CompanyDebts, DialogueState, DialogueStep, EngineResult, Escalate,
    Reply, SurveyRating, SurveyRecord, SurveyStarted,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Vocabulary
# ──────────────────────────────────────────────────────────────

SHOW_MENU_KEYWORDS = frozenset({"menu", "inicio", "home", "0"})
FAREWELL_KEYWORDS = frozenset({"salir", "chao", "adios", "fin", "terminar", "exit", "bye"})
EXIT_KEYWORDS = SHOW_MENU_KEYWORDS | FAREWELL_KEYWORDS | frozenset({"cancelar", "cancel"})

CONSULT_KEYWORDS = ("consultar", "deuda", "consult")
ADVISOR_KEYWORDS = ("asesor", "agente", "advisor", "agent")

ACCEPT_WORDS = frozenset({"si", "sí", "acepto", "ok", "claro", "dele", "yes"})
REJECT_WORDS = frozenset({"no", "rechazo", "nunca", "jamás"})

# Checked in order; the first rating with a matching fragment wins.
SURVEY_RATINGS: list[tuple[SurveyRating, tuple[str, ...]]] = [
    (SurveyRating.BAD, ("1", "mala", "bad")),
    (SurveyRating.REGULAR, ("2", "regular")),
    (SurveyRating.EXCELLENT, ("3", "excelente", "excellent")),
]

MIN_NAME_LENGTH = 3
MIN_NATIONAL_ID_LENGTH = 5


# ──────────────────────────────────────────────────────────────
#  Outcome
# ──────────────────────────────────────────────────────────────

@dataclass
class StepOutcome:
    state: DialogueState
    result: EngineResult
    captured_name: Optional[str] = None
    survey: Optional[SurveyRecord] = None
    reset_state: bool = False


StepHandler = Callable[[DialogueState, Chat, str, str], Awaitable[StepOutcome]]


def classify_survey(text: str) -> Optional[SurveyRating]:
    choice = text.strip().lower()
    for rating, fragments in SURVEY_RATINGS:
        if any(f in choice for f in fragments):
            return rating
    return None


# ──────────────────────────────────────────────────────────────
#  Engine
# ──────────────────────────────────────────────────────────────

class ConversationEngine:
    """
    Stateless apart from its collaborators: the repository is used for
    read-only client lookups and the clock drives the greeting.
    """

    def __init__(
        self,
        repo: ChatRepository,
        clock: Optional[Callable[[], datetime]] = None,
        timezone_name: str = "America/Guayaquil",
    ):
        self._repo = repo
        if clock is None:
            tz = ZoneInfo(timezone_name)
            clock = lambda: datetime.now(tz)  # noqa: E731
        self._clock = clock
        self._handlers: dict[str, StepHandler] = {
            DialogueStep.START: self._on_start,
            DialogueStep.ASK_FOR_NAME: self._on_ask_for_name,
            DialogueStep.MAIN_MENU: self._on_main_menu,
            DialogueStep.DISCLAIMER: self._on_disclaimer,
            DialogueStep.AWAIT_ID: self._on_await_id,
            DialogueStep.SURVEY: self._on_survey,
        }

    async def process(self, state: DialogueState, chat: Chat, raw_text: str) -> StepOutcome:
        text = (raw_text or "").strip()
        lower = text.lower()
        current = state.model_copy(deep=True)

        exit_outcome = self._handle_exit(current, chat, lower)
        if exit_outcome is not None:
            return exit_outcome

        handler = self._handlers.get(current.step, self._on_unknown_step)
        outcome = await handler(current, chat, text, lower)
        logger.debug("dialogue_step",
                     chat_id=chat.id,
                     from_step=state.step,
                     to_step=outcome.state.step,
                     result=type(outcome.result).__name__)
        return outcome

    # ── Global exit keywords ──────────────────────────────

    def _handle_exit(self, state: DialogueState, chat: Chat, lower: str) -> Optional[StepOutcome]:
        if lower not in EXIT_KEYWORDS:
            return None
        now = self._clock()

        if state.step == DialogueStep.MAIN_MENU and lower in SHOW_MENU_KEYWORDS:
            return StepOutcome(state, Reply(messages.main_menu(now, chat.customer_name)))

        if lower in FAREWELL_KEYWORDS:
            state.step = DialogueStep.SURVEY.value
            return StepOutcome(state, SurveyStarted(messages.SURVEY_QUESTION))

        state.step = DialogueStep.MAIN_MENU.value
        state.terms_accepted = False
        text = messages.RESET_NOTICE + messages.main_menu(now, chat.customer_name, include_intro=False)
        return StepOutcome(state, Reply(text))

    # ── Step handlers ─────────────────────────────────────

    async def _on_start(self, state: DialogueState, chat: Chat, text: str, lower: str) -> StepOutcome:
        now = self._clock()
        if chat.customer_name:
            state.step = DialogueStep.MAIN_MENU.value
            return StepOutcome(state, Reply(messages.main_menu(now, chat.customer_name)))
        state.step = DialogueStep.ASK_FOR_NAME.value
        return StepOutcome(state, Reply(messages.ask_for_name(now)))

    async def _on_ask_for_name(self, state: DialogueState, chat: Chat, text: str, lower: str) -> StepOutcome:
        if len(text) < MIN_NAME_LENGTH or any(ch.isdigit() for ch in text):
            return StepOutcome(state, Reply(messages.INVALID_NAME))
        state.step = DialogueStep.MAIN_MENU.value
        return StepOutcome(
            state,
            Reply(messages.main_menu(self._clock(), text)),
            captured_name=text,
        )

    async def _on_main_menu(self, state: DialogueState, chat: Chat, text: str, lower: str) -> StepOutcome:
        if text == "1" or any(k in lower for k in CONSULT_KEYWORDS):
            if state.terms_accepted:
                state.step = DialogueStep.AWAIT_ID.value
                return StepOutcome(state, Reply(messages.ASK_NATIONAL_ID))
            state.step = DialogueStep.DISCLAIMER.value
            return StepOutcome(state, Reply(messages.DISCLAIMER))

        if text == "2" or any(k in lower for k in ADVISOR_KEYWORDS):
            return StepOutcome(state, Escalate())

        menu = messages.main_menu(self._clock(), chat.customer_name, include_intro=False)
        return StepOutcome(state, Reply(messages.UNRECOGNIZED_OPTION + menu))

    async def _on_disclaimer(self, state: DialogueState, chat: Chat, text: str, lower: str) -> StepOutcome:
        if lower in ACCEPT_WORDS:
            state.terms_accepted = True
            state.step = DialogueStep.AWAIT_ID.value
            return StepOutcome(state, Reply(messages.TERMS_ACCEPTED))

        if lower in REJECT_WORDS:
            state.step = DialogueStep.MAIN_MENU.value
            menu = messages.main_menu(self._clock(), None, include_intro=False)
            return StepOutcome(state, Reply(messages.PRIVACY_NOTICE + menu))

        return StepOutcome(state, Reply(messages.DISCLAIMER_UNCLEAR))

    async def _on_await_id(self, state: DialogueState, chat: Chat, text: str, lower: str) -> StepOutcome:
        national_id = text.strip()
        if len(national_id) < MIN_NATIONAL_ID_LENGTH:
            return StepOutcome(state, Reply(messages.NATIONAL_ID_TOO_SHORT))

        menu = messages.main_menu(self._clock(), chat.customer_name, include_intro=False)
        state.step = DialogueStep.MAIN_MENU.value

        client = await self._repo.find_client_by_id(national_id)
        if client is None:
            logger.info("client_not_found", chat_id=chat.id)
            return StepOutcome(state, Reply(messages.no_client_record(national_id) + menu))

        summary = await build_debt_summary(self._repo, national_id)
        state.national_id = national_id
        state.companies = [CompanyDebts(header=p) for p in summary.providers]
        if summary.has_debt:
            body = messages.account_statement(client.name, summary.text)
        else:
            body = messages.good_news(chat.customer_name)
        return StepOutcome(state, Reply(body + messages.DEBT_TIP + menu))

    async def _on_survey(self, state: DialogueState, chat: Chat, text: str, lower: str) -> StepOutcome:
        rating = classify_survey(text)
        record = SurveyRecord(
            chat_id=chat.id,
            rating=rating,
            comment=None if rating else text,
        )
        return StepOutcome(
            DialogueState(),
            Reply(messages.SURVEY_THANKS),
            survey=record,
            reset_state=True,
        )

    async def _on_unknown_step(self, state: DialogueState, chat: Chat, text: str, lower: str) -> StepOutcome:
        logger.warning("dialogue_unknown_step", chat_id=chat.id, step=state.step)
        state.step = DialogueStep.MAIN_MENU.value
        menu = messages.main_menu(self._clock(), chat.customer_name)
        return StepOutcome(state, Reply(messages.CONFUSED_RESTART + menu))
