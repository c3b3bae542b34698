"""
Wiring of the routing core.

build_routing_container() connects the shared store, the repository, the
messaging channel and the notifier into one Router and one
AssignmentScheduler sharing a single RoutingRuntime. The API lifespan and
the tests both build through here.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from channels.base import MessagingChannel
from channels.notifier import Notifier
from config.settings import Settings
from context.lease import LeaseManager
from context.state_store import DialogueStateStore
from core.assignment import AssignmentScheduler
from core.engine import ConversationEngine
from core.orchestrator import Router
from core.outbox import ChatOutbox
from core.runtime import RoutingRuntime
from database.kv_store import KeyValueStore
from database.repository_base import ChatRepository
from job_queue.wait_queue import WaitQueue


@dataclass
class RoutingContainer:
    settings: Settings
    store: KeyValueStore
    repo: ChatRepository
    channel: MessagingChannel
    notifier: Notifier
    runtime: RoutingRuntime
    state_store: DialogueStateStore
    leases: LeaseManager
    wait_queue: WaitQueue
    engine: ConversationEngine
    scheduler: AssignmentScheduler
    router: Router

    def start_maintenance(self) -> None:
        m = self.settings.maintenance
        self.runtime.run_periodic(
            "release_stale_chats",
            m.stale_chat_sweep_interval_seconds,
            lambda: self.scheduler.release_stale_chats(m.stale_chat_max_age_seconds),
        )

    async def stop(self) -> None:
        await self.runtime.stop()


def build_routing_container(
    settings: Settings,
    store: KeyValueStore,
    repo: ChatRepository,
    channel: MessagingChannel,
    notifier: Notifier,
    runtime: Optional[RoutingRuntime] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> RoutingContainer:
    runtime = runtime or RoutingRuntime()
    routing = settings.routing
    state_store = DialogueStateStore(store)
    leases = LeaseManager(store, ttl_seconds=routing.lease_ttl_seconds)
    wait_queue = WaitQueue(store)
    outbox = ChatOutbox(repo, channel, notifier)
    engine = ConversationEngine(repo, clock=clock, timezone_name=settings.timezone)
    scheduler = AssignmentScheduler(
        repo=repo,
        wait_queue=wait_queue,
        state_store=state_store,
        leases=leases,
        outbox=outbox,
        notifier=notifier,
        runtime=runtime,
        config=routing,
    )
    router = Router(
        repo=repo,
        state_store=state_store,
        leases=leases,
        engine=engine,
        scheduler=scheduler,
        channel=channel,
        outbox=outbox,
        notifier=notifier,
        runtime=runtime,
        config=routing,
    )
    runtime.start()
    return RoutingContainer(
        settings=settings,
        store=store,
        repo=repo,
        channel=channel,
        notifier=notifier,
        runtime=runtime,
        state_store=state_store,
        leases=leases,
        wait_queue=wait_queue,
        engine=engine,
        scheduler=scheduler,
        router=router,
    )
