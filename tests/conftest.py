"""Shared test fixtures for ConverseRouter."""
from datetime import datetime
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio

from channels.base import ChannelError, MessagingChannel
from channels.notifier import Notifier
from config.settings import RoutingConfig, Settings
from core.container import build_routing_container
from database.kv_store import InMemoryKeyValueStore
from database.repository_memory import InMemoryChatRepository
from models.schemas import (
    Agent, AgentRole, Client, DebtContract, DebtDetail, InboundMessage,
)


CONTACT_ID = "593991112233"
DEBTOR_ID = "0912345678"


# ──────────────────────────────────────────────────────────────
#  Fakes
# ──────────────────────────────────────────────────────────────

class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChannel(MessagingChannel):
    """Records outbound traffic instead of calling an API."""

    name = "fake"

    def __init__(self):
        super().__init__()
        self.sent: list[tuple[str, str]] = []
        self.typing: list[tuple[str, float]] = []
        self.fail_sends = False

    async def _do_send(self, contact_id: str, text: str) -> dict[str, Any]:
        if self.fail_sends:
            raise ChannelError("send rejected", self.name)
        self.sent.append((contact_id, text))
        return {"status": "sent"}

    async def _do_send_typing(self, contact_id: str, seconds: float) -> None:
        self.typing.append((contact_id, seconds))

    def _parse_inbound(self, payload: dict[str, Any]) -> list[InboundMessage]:
        return [InboundMessage(**m) for m in payload.get("messages", [])]

    def texts_to(self, contact_id: str) -> list[str]:
        return [text for cid, text in self.sent if cid == contact_id]


class RecordingNotifier(Notifier):

    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    async def new_chat(self, chat):
        self.events.append(("new_chat", chat.id))

    async def assigned_chat(self, chat):
        self.events.append(("assigned_chat", chat.id))

    async def released_chat(self, chat):
        self.events.append(("released_chat", chat.id))

    async def agent_assignment(self, agent_id, chat):
        self.events.append(("agent_assignment", (agent_id, chat.id)))

    async def new_message(self, chat, message):
        self.events.append(("new_message", message.content))

    async def new_note(self, chat, note):
        self.events.append(("new_note", note.content))

    async def presence_update(self, agents):
        self.events.append(("presence_update", [a.agent_id for a in agents]))

    async def dashboard_invalidated(self):
        self.events.append(("dashboard_invalidated", None))


def morning_clock() -> datetime:
    return datetime(2026, 3, 2, 9, 30)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def agents() -> dict[str, Agent]:
    return {
        "a1": Agent(id="a1", first_name="Ana", email="ana@example.com"),
        "a2": Agent(id="a2", first_name="Bruno", email="bruno@example.com"),
        "root": Agent(id="root", role=AgentRole.ADMIN, first_name="Root"),
    }


@pytest_asyncio.fixture
async def repo(agents) -> InMemoryChatRepository:
    repository = InMemoryChatRepository()
    for agent in agents.values():
        await repository.save_agent(agent)
    repository.seed_client(
        Client(id="cl-1", national_id=DEBTOR_ID, name="Juan Pérez"),
        [
            (
                DebtContract(id="ct-1", self_owned=True, portfolio_description="Cartera Banco Pichincha"),
                [DebtDetail(product="Tarjeta de crédito",
                            total_amount=Decimal("1520.4"),
                            settlement_amount=Decimal("980"))],
            ),
            (
                DebtContract(id="ct-2", self_owned=False, portfolio_description="Almacenes Jaher"),
                [DebtDetail(product="Refrigeradora", balance_at_cutoff=Decimal("310.255"))],
            ),
        ],
    )
    repository.seed_client(Client(id="cl-2", national_id="0987654321", name="María Sin Deuda"))
    return repository


@pytest.fixture
def channel() -> FakeChannel:
    ch = FakeChannel()
    ch.set_ready(True)
    return ch


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        log_json=False,
        routing=RoutingConfig(
            lease_ttl_seconds=5.0,
            inactivity_timeout_seconds=60.0,
            response_timeout_seconds=60.0,
        ),
    )


@pytest_asyncio.fixture
async def container(settings, kv_store, repo, channel, notifier):
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
