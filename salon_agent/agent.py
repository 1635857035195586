"""Conversation orchestrator for the salon booking assistant.

Architecture:
  Each turn is driven by a small LangGraph StateGraph:

    agent → (tool calls and rounds left?) → tools → agent (loop)
          → (plain text, or out of rounds) → END

  The graph is compiled once and holds no state between turns.  Everything
  turn-specific (the role's tool registry, bound to this turn's session
  context) travels in ``config["configurable"]``.

  Around the graph, ``Orchestrator.handle_turn``:

    1. takes the session's lock and loads its context
    2. classifies the message and applies the intent's memory effects
    3. settles any booking attempt that was waiting on an override decision
       (staff "force" re-submits it straight away with ``force=True``)
    4. builds the instructions and runs the graph
    5. appends the exchange to history and saves the context

  Only a model failure ends a turn early, and even then the human gets a
  polite reply and the context is saved.

  Memory:
    The session context store is the single source of truth.  The graph
    sees a fresh message list each turn: instructions, bounded history,
    the new message.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Annotated, Any
from zoneinfo import ZoneInfo

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from salon_agent.booking import BookingAttempt, BookingState, is_abandon_request, is_force_request
from salon_agent.config import (
    ANTHROPIC_API_KEY,
    BUSINESS_TIMEZONE,
    HISTORY_WINDOW,
    MAX_TOOL_ROUNDS,
    MODEL_NAME,
    MODEL_TIMEOUT_SECONDS,
    TOOL_LOG_WINDOW,
    TOOL_TIMEOUT_SECONDS,
)
from salon_agent.errors import ModelCallError
from salon_agent.intent import Intent, apply_intent, classify_intent
from salon_agent.models import Role, SessionContext, Speaker, ToolInvocation
from salon_agent.prompts import build_instructions
from salon_agent.services.catalog import ServiceCatalog
from salon_agent.services.metrics import metrics
from salon_agent.services.salon_client import get_salon_client
from salon_agent.services.session_store import SessionLocks, SessionStore, create_session_store
from salon_agent.tools.base import ContextUpdate, ToolContext, ToolOutcome
from salon_agent.tools.registry import ToolRegistry, build_registry

logger = logging.getLogger(__name__)

FALLBACK_REPLY = (
    "I'm sorry, I'm having trouble responding right now. "
    "Please try again in a moment."
)
INCOMPLETE_REPLY = (
    "Sorry, I couldn't finish that in one go. "
    "Could you tell me again what you'd like to do?"
)

_BOOKING_INTENTS = {
    "create_appointment": Intent.CREATE,
    "update_appointment": Intent.UPDATE,
}


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict):
    """State flowing through the graph for one turn.

    ``rounds`` counts executed tool rounds so the loop is bounded even if
    the model keeps asking for tools.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    rounds: int


# ── Helpers ──────────────────────────────────────────────────────────


def _build_llm() -> ChatAnthropic:
    """Build the Claude chat model used for every turn; tools are bound per call."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,  # Low temperature for consistent tool use
        max_tokens=1024,
    )


def _history_messages(context: SessionContext) -> list[AnyMessage]:
    """Convert the stored transcript into chat messages, dropping any leading
    assistant entries so the conversation opens with the user.
    """
    messages: list[AnyMessage] = []
    for entry in context.history:
        if entry.speaker == Speaker.USER:
            messages.append(HumanMessage(content=entry.text))
        elif messages:
            messages.append(AIMessage(content=entry.text))
    return messages


def _text_of(message: AnyMessage) -> str:
    """Plain reply text of a model message, joining text blocks and skipping tool-use blocks."""
    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts = [
        block.get("text", "") if isinstance(block, dict) else str(block)
        for block in content
        if not isinstance(block, dict) or block.get("type") == "text"
    ]
    return "".join(parts).strip()


def _has_tool_requests(message: AnyMessage) -> bool:
    """True when the model asked for at least one tool, well-formed or not."""
    return bool(getattr(message, "tool_calls", None) or getattr(message, "invalid_tool_calls", None))


def apply_update(context: SessionContext, update: ContextUpdate) -> None:
    """Fold a tool's requested changes into the session context."""
    memory = context.memory
    if update.identity is not None:
        if context.identity and context.identity.external_id != update.identity.external_id:
            logger.info("Switching customer; clearing appointment state")
            memory.clear_appointment_state()
            memory.known_appointments = []
            memory.last_booking = None
        context.identity = update.identity
    if update.known_appointments is not None:
        memory.known_appointments = list(update.known_appointments)
    if update.selected_services is not None:
        memory.select_services(update.selected_services, append=update.append_services)
    if update.removed_service_ids:
        memory.deselect_services(update.removed_service_ids)
    if update.preferred_date:
        memory.preferred_date = update.preferred_date
    if update.preferred_time:
        memory.preferred_time = update.preferred_time
    if update.clear_active_appointment:
        memory.set_active_appointment(None)
    if update.active_appointment is not None:
        memory.set_active_appointment(update.active_appointment)
    if update.last_booking is not None:
        memory.last_booking = update.last_booking


# ── Orchestrator ─────────────────────────────────────────────────────


class Orchestrator:
    """Runs conversation turns against one store, catalog and backend."""

    def __init__(
        self,
        llm: BaseChatModel,
        store: SessionStore,
        catalog: ServiceCatalog,
        client: Any,
        *,
        clock: Callable[[], datetime] | None = None,
        history_window: int = HISTORY_WINDOW,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
        tool_log_window: int = TOOL_LOG_WINDOW,
        model_timeout: float = MODEL_TIMEOUT_SECONDS,
        tool_timeout: float = TOOL_TIMEOUT_SECONDS,
    ):
        self._llm = llm
        self._store = store
        self._catalog = catalog
        self._client = client
        self._clock = clock or (lambda: datetime.now(ZoneInfo(BUSINESS_TIMEZONE)))
        self._history_window = history_window
        self._max_tool_rounds = max_tool_rounds
        self._tool_log_window = tool_log_window
        self._model_timeout = model_timeout
        self._tool_timeout = tool_timeout
        self._locks = SessionLocks()
        self._graph = self._build_graph()

    @property
    def catalog(self) -> ServiceCatalog:
        return self._catalog

    # ── Public API ───────────────────────────────────────────────────

    async def handle_turn(self, session_id: str, role: Role | str, user_text: str) -> str:
        """Process one user message and return the assistant's reply."""
        role = Role(role)
        t0 = time.perf_counter()
        async with self._locks(session_id):
            context = await self._store.get(session_id, role)
            reply, intent, fallback = await self._run_turn(context, user_text)
            await self._store.save(session_id, context)

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_turn(intent.value, context.role.value, elapsed, fallback=fallback)
        logger.info(
            "Turn done session=%s intent=%s fallback=%s (%.0fms)",
            session_id, intent.value, fallback, elapsed,
        )
        return reply

    async def reset_session(self, session_id: str, role: Role | str | None = None) -> SessionContext:
        """The "clear context" action: fresh context, same role."""
        async with self._locks(session_id):
            return await self._store.reset(session_id, Role(role) if role else None)

    async def get_session(self, session_id: str, role: Role | str = Role.CUSTOMER) -> SessionContext:
        """Load a session without running a turn (created on first use)."""
        async with self._locks(session_id):
            return await self._store.get(session_id, Role(role))

    # ── Turn ─────────────────────────────────────────────────────────

    async def _run_turn(self, context: SessionContext, text: str) -> tuple[str, Intent, bool]:
        """Run the graph for one message; returns (reply, intent, fell back).

        Never raises for a model failure: the fallback reply is returned and
        the context is still updated so the caller can save it.
        """
        now = self._clock()
        registry = build_registry(
            context.role,
            ToolContext(
                client=self._client,
                catalog=self._catalog,
                session=context,
                now=now,
                user_text=text,
            ),
            timeout=self._tool_timeout,
        )

        decision = classify_intent(text, context)
        intent = decision.intent
        seed: list[AnyMessage] = []

        if self._is_override(context, text):
            intent = _BOOKING_INTENTS.get(context.memory.pending_booking.tool_name, intent)
            seed = await self._force_pending(context, registry)
        else:
            apply_intent(context, decision)
            self._settle_override_decision(context, text)

        instructions = build_instructions(intent, context, await self._catalog_summary(), now)
        messages: list[AnyMessage] = [
            SystemMessage(content=instructions),
            *_history_messages(context),
            HumanMessage(content=text),
            *seed,
        ]

        fallback = False
        try:
            result = await self._graph.ainvoke(
                {"messages": messages, "rounds": 1 if seed else 0},
                config={
                    "configurable": {"registry": registry},
                    "recursion_limit": 2 * self._max_tool_rounds + 4,
                },
            )
            reply = _text_of(result["messages"][-1]) or INCOMPLETE_REPLY
        except ModelCallError:
            logger.exception("Model call failed for session %s", context.session_id)
            reply = FALLBACK_REPLY
            fallback = True

        if intent is Intent.CREATE and context.memory.active_appointment_id:
            context.memory.set_active_appointment(None)

        if not context.is_repeated_user_message(text):
            context.append_history(Speaker.USER, text, window=self._history_window)
        context.append_history(Speaker.ASSISTANT, reply, window=self._history_window)
        return reply, intent, fallback

    async def _catalog_summary(self) -> str:
        """Catalog text for the prompt, or "" when no copy can be had."""
        try:
            return await self._catalog.summary()
        except Exception as exc:
            logger.warning("Service catalog unavailable for prompt: %s: %s", type(exc).__name__, exc)
            return ""

    # ── Booking attempts ─────────────────────────────────────────────

    @staticmethod
    def _is_override(context: SessionContext, text: str) -> bool:
        """Staff typed "force" while a conflicted booking is waiting."""
        return context.is_admin and context.awaiting_override and is_force_request(text)

    @staticmethod
    def _settle_override_decision(context: SessionContext, text: str) -> None:
        """Any input other than a staff override ends the wait."""
        if not context.awaiting_override:
            return
        pending = context.memory.pending_booking
        if is_abandon_request(text):
            pending.transition(BookingState.ABANDONED)
            context.memory.pending_booking = None
        else:
            pending.transition(BookingState.DRAFTING)

    async def _force_pending(self, context: SessionContext, registry: ToolRegistry) -> list[AnyMessage]:
        """Re-submit the conflicted booking with ``force=True``.

        Returns the tool call and its result as messages, so the model's
        reply is grounded in what the backend actually said.
        """
        pending = context.memory.pending_booking
        pending.transition(BookingState.FORCED)
        outcome = await self._execute(registry, pending.tool_name, pending.arguments, force=True)
        pending.transition(BookingState.CONFIRMED if outcome.success else BookingState.ABANDONED)
        context.memory.pending_booking = None

        call_id = f"toolu_force_{uuid.uuid4().hex[:16]}"
        return [
            AIMessage(
                content="",
                tool_calls=[{
                    "name": pending.tool_name,
                    "args": dict(pending.arguments),
                    "id": call_id,
                    "type": "tool_call",
                }],
            ),
            ToolMessage(content=outcome.content, tool_call_id=call_id, name=pending.tool_name),
        ]

    def _begin_attempt(self, context: SessionContext, name: str, raw_args: Any) -> BookingAttempt:
        """Open or re-draft the pending booking for a booking tool call.

        A booking that was waiting on an override decision, or one still being
        drafted, is carried forward with the new arguments; otherwise a fresh
        attempt starts.  Either way it moves to ``SLOT_CHECK_REQUESTED``.
        """
        memory = context.memory
        arguments = raw_args if isinstance(raw_args, dict) else {}
        pending = memory.pending_booking
        if pending is not None and pending.state == BookingState.AWAITING_OVERRIDE_DECISION:
            pending.transition(BookingState.DRAFTING)
        if pending is not None and pending.state == BookingState.DRAFTING:
            pending.redraft(name, arguments)
            attempt = pending
        else:
            attempt = BookingAttempt.draft(name, arguments)
        attempt.transition(BookingState.SLOT_CHECK_REQUESTED)
        memory.pending_booking = attempt
        return attempt

    @staticmethod
    def _settle_attempt(context: SessionContext, attempt: BookingAttempt, outcome: ToolOutcome) -> None:
        """Move the attempt on from the tool result.

        Success confirms and clears it, a conflict parks it awaiting an
        override decision with the suggested alternatives, and any other
        failure sends it back to drafting.
        """
        attempt.arguments = dict(outcome.arguments)
        attempt.appointment_id = outcome.arguments.get("appointment_id")
        if outcome.success:
            attempt.transition(BookingState.AVAILABLE)
            attempt.transition(BookingState.CONFIRMED)
            context.memory.pending_booking = None
        elif outcome.conflict:
            attempt.transition(BookingState.CONFLICT)
            attempt.alternatives = list(outcome.alternatives)
            attempt.transition(BookingState.AWAITING_OVERRIDE_DECISION)
        else:
            attempt.transition(BookingState.DRAFTING)

    async def _execute(
        self,
        registry: ToolRegistry,
        name: str,
        raw_args: Any,
        *,
        force: bool = False,
    ) -> ToolOutcome:
        """Run one tool call and fold its result into the session context."""
        context = registry.context.session
        spec = registry.get(name)
        attempt = None
        if spec is not None and spec.booking and not force:
            attempt = self._begin_attempt(context, name, raw_args)

        outcome = await registry.execute(name, raw_args, force=force)

        if attempt is not None:
            self._settle_attempt(context, attempt, outcome)
        if outcome.updates is not None:
            apply_update(context, outcome.updates)
        context.memory.log_invocation(
            ToolInvocation(
                tool_name=name,
                arguments=outcome.arguments,
                result_summary=outcome.summary(),
                success=outcome.success,
            ),
            window=self._tool_log_window,
        )
        return outcome

    # ── Graph ────────────────────────────────────────────────────────

    async def _agent_node(self, state: TurnState, config: RunnableConfig) -> dict:
        """Call the model with the turn's tools bound, bounded by the model timeout."""
        registry: ToolRegistry = config["configurable"]["registry"]
        llm = self._llm.bind_tools(registry.langchain_tools())
        t0 = time.perf_counter()
        try:
            response = await asyncio.wait_for(llm.ainvoke(state["messages"]), self._model_timeout)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "llm_invoke", error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise ModelCallError(f"Model call failed: {type(exc).__name__}") from exc

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "llm_invoke", latency_ms=elapsed)
        logger.debug(
            "Model responded in %.0fms (%d tool call(s))",
            elapsed, len(getattr(response, "tool_calls", []) or []),
        )
        return {"messages": [response]}

    async def _tools_node(self, state: TurnState, config: RunnableConfig) -> dict:
        """Execute every tool call of the last model message, malformed ones included."""
        registry: ToolRegistry = config["configurable"]["registry"]
        last = state["messages"][-1]
        results: list[ToolMessage] = []
        for call in last.tool_calls:
            outcome = await self._execute(registry, call["name"], call["args"])
            results.append(
                ToolMessage(content=outcome.content, tool_call_id=call["id"], name=call["name"])
            )
        for bad in getattr(last, "invalid_tool_calls", None) or []:
            name = bad.get("name") or "unknown"
            outcome = await self._execute(registry, name, bad.get("args"))
            results.append(
                ToolMessage(
                    content=outcome.content,
                    tool_call_id=bad.get("id") or f"invalid_{uuid.uuid4().hex[:8]}",
                    name=name,
                )
            )
        return {"messages": results, "rounds": state["rounds"] + 1}

    def _route(self, state: TurnState) -> str:
        """Go to the tools node while the model wants tools and rounds remain."""
        last = state["messages"][-1]
        if _has_tool_requests(last) and state["rounds"] < self._max_tool_rounds:
            return "tools"
        return END

    def _build_graph(self):
        """Build and compile the agent / tools loop.

        Compiled once per orchestrator without a checkpointer; the per-turn
        registry arrives through ``config["configurable"]``.
        """
        graph = StateGraph(TurnState)
        graph.add_node("agent", self._agent_node)
        graph.add_node("tools", self._tools_node)
        graph.set_entry_point("agent")
        graph.add_conditional_edges("agent", self._route, {"tools": "tools", END: END})
        graph.add_edge("tools", "agent")
        compiled = graph.compile()
        logger.debug("Turn graph compiled (max tool rounds: %d)", self._max_tool_rounds)
        return compiled


def create_orchestrator() -> Orchestrator:
    """Wire the production orchestrator from configuration."""
    client = get_salon_client()
    return Orchestrator(
        llm=_build_llm(),
        store=create_session_store(),
        catalog=ServiceCatalog(client),
        client=client,
    )
