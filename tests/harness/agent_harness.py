from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from leasing_agent.clock import FakeClock
from leasing_agent.config import AgentConfig
from leasing_agent.conversation_store import InMemoryConversationStore, Message
from leasing_agent.dispatcher import Action, SessionEventDispatcher, StreamAction
from leasing_agent.llm_client import FakeLLMClient, LLMClient
from leasing_agent.metrics import Metrics
from leasing_agent.prompt import build_system_prompt
from leasing_agent.protocol import OutboundEvent, parse_webhook_obj
from leasing_agent.sessions import SessionRegistry
from leasing_agent.tools import AcceptAllBookingService, ListingProvider, StaticListingProvider, ToolRegistry


@dataclass
class AgentHarness:
    cfg: AgentConfig
    clock: FakeClock
    metrics: Metrics
    store: InMemoryConversationStore
    registry: SessionRegistry
    llm: LLMClient
    booking: AcceptAllBookingService
    dispatcher: SessionEventDispatcher

    @staticmethod
    def build(
        *,
        llm: Optional[LLMClient] = None,
        cfg: Optional[AgentConfig] = None,
        listings: Optional[ListingProvider] = None,
    ) -> "AgentHarness":
        cfg = cfg or AgentConfig()
        clock = FakeClock(start_ms=1_700_000_000_000)
        metrics = Metrics()
        store = InMemoryConversationStore(metrics=metrics)
        registry = SessionRegistry(store, max_pending=cfg.session_queue_max, metrics=metrics)
        llm = llm or FakeLLMClient()
        booking = AcceptAllBookingService()
        listing_provider = listings or StaticListingProvider(clock)

        def tools_for_session(session_id: str) -> ToolRegistry:
            return ToolRegistry(
                session_id=session_id,
                clock=clock,
                listings=listing_provider,
                booking=booking,
                timeout_ms=cfg.tool_timeout_ms,
                metrics=metrics,
            )

        dispatcher = SessionEventDispatcher(
            cfg=cfg,
            registry=registry,
            llm=llm,
            tools_for_session=tools_for_session,
            system_prompt=lambda: build_system_prompt(None),
            clock=clock,
            metrics=metrics,
        )
        return AgentHarness(
            cfg=cfg,
            clock=clock,
            metrics=metrics,
            store=store,
            registry=registry,
            llm=llm,
            booking=booking,
            dispatcher=dispatcher,
        )

    def send(self, obj: dict[str, Any]) -> Action:
        return self.dispatcher.handle(parse_webhook_obj(obj))

    async def collect(self, action: Action) -> list[OutboundEvent]:
        assert isinstance(action, StreamAction)
        events = [ev async for ev in action.stream.iter_events()]
        await asyncio.gather(action.task, return_exceptions=True)
        return events

    async def history(self, session_id: str) -> list[Message]:
        return await self.store.load(session_id)
