"""Per-turn tool registry and the validated tool-call boundary.

``build_registry`` binds the role's tools to one turn's ``ToolContext``.
``ToolRegistry.execute`` is the only way a tool runs, and it never raises:

1. unknown tool          → ``unknown_tool`` error result
2. recovery + validation → ``invalid_arguments`` / ``ambiguous_service``
3. handler, bounded by ``TOOL_TIMEOUT_SECONDS``
                         → ``timeout`` / ``backend_error``; a write that
                           times out is flagged ``outcome_unknown``
4. booking conflict      → ``scheduling_conflict`` with the nearest free
                           slots and, for staff, an override offer

The model only ever sees the JSON payload; exceptions stay in the logs.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ValidationError

from salon_agent.config import TOOL_TIMEOUT_SECONDS
from salon_agent.errors import (
    ResolutionAmbiguityError,
    SalonAPIError,
    SchedulingConflictError,
    ToolArgumentError,
    ToolExecutionError,
)
from salon_agent.models import Role
from salon_agent.services.metrics import metrics
from salon_agent.tools import appointments, catalog, customers
from salon_agent.tools.base import ToolContext, ToolOutcome, ToolSpec, error_payload
from salon_agent.utils import format_display_time

logger = logging.getLogger(__name__)

ALL_SPECS: list[ToolSpec] = [*customers.SPECS, *catalog.SPECS, *appointments.SPECS]


def _parse_raw(raw: dict[str, Any] | str | None) -> tuple[dict[str, Any], str]:
    """Split raw model output into (dict args, text blob for heuristics)."""
    if isinstance(raw, dict):
        return dict(raw), json.dumps(raw, default=str)
    blob = raw or ""
    try:
        parsed = json.loads(blob) if blob else {}
    except json.JSONDecodeError:
        parsed = {}
    return (parsed if isinstance(parsed, dict) else {}), blob


def _timeout_payload(spec: ToolSpec, dispatched: bool) -> dict[str, Any]:
    if spec.writes and dispatched:
        # The request may have reached the backend before we stopped waiting.
        return error_payload(
            "timeout",
            "The booking system did not answer in time, so it is unknown whether this "
            "change was saved. Do not repeat it yet: check first with get_appointment "
            "or lookup_customer, then tell the customer what you found.",
            outcome_unknown=True,
        )
    return error_payload(
        "timeout",
        "The booking system did not respond in time. Nothing was changed; "
        "apologise and offer to try again.",
    )


def _validation_message(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "arguments"
        problems.append(f"{loc}: {err['msg']}")
    return "Invalid arguments: " + "; ".join(problems)


class ToolRegistry:
    """The tools one role may use during one turn."""

    def __init__(self, specs: list[ToolSpec], context: ToolContext, *, timeout: float = TOOL_TIMEOUT_SECONDS):
        self._specs = {spec.name: spec for spec in specs}
        self._context = context
        self._timeout = timeout

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    @property
    def context(self) -> ToolContext:
        return self._context

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def langchain_tools(self) -> list[StructuredTool]:
        """The specs as LangChain tools, for ``bind_tools``."""
        tools = []
        for spec in self._specs.values():

            async def _invoke(_name: str = spec.name, **kwargs: Any) -> str:
                return (await self.execute(_name, kwargs)).content

            tools.append(
                StructuredTool.from_function(
                    coroutine=_invoke,
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_model,
                )
            )
        return tools

    # ── Execution ────────────────────────────────────────────────────

    async def _prepare(self, spec: ToolSpec, raw: dict[str, Any], blob: str) -> BaseModel:
        if spec.recover is not None:
            raw = await spec.recover(raw, blob, self._context)
        try:
            return spec.args_model.model_validate(raw)
        except ValidationError as exc:
            raise ToolArgumentError(_validation_message(exc)) from exc

    async def _run(self, spec: ToolSpec, args: BaseModel, force: bool):
        if spec.booking:
            return await spec.handler(args, self._context, force=force)
        return await spec.handler(args, self._context)

    async def execute(
        self,
        name: str,
        raw_args: dict[str, Any] | str | None,
        *,
        force: bool = False,
    ) -> ToolOutcome:
        raw, blob = _parse_raw(raw_args)
        spec = self._specs.get(name)
        if spec is None:
            logger.warning("Model requested unknown tool %r", name)
            return ToolOutcome(
                tool_name=name,
                arguments=raw,
                payload=error_payload(
                    "unknown_tool",
                    f"There is no tool called {name}. Available tools: {', '.join(self._specs)}.",
                ),
            )

        t0 = time.perf_counter()
        arguments = raw
        dispatched = False
        try:
            args = await asyncio.wait_for(self._prepare(spec, raw, blob), self._timeout)
            arguments = args.model_dump(mode="json")
            dispatched = True
            result = await asyncio.wait_for(self._run(spec, args, force), self._timeout)
            outcome = ToolOutcome(
                tool_name=name,
                arguments=arguments,
                payload=result.payload,
                updates=result.updates,
            )

        except ToolArgumentError as exc:
            logger.info("Tool %s rejected arguments: %s", name, exc)
            outcome = ToolOutcome(name, arguments, error_payload("invalid_arguments", str(exc), field=exc.field))

        except ResolutionAmbiguityError as exc:
            logger.info("Tool %s: %s", name, exc)
            outcome = ToolOutcome(
                name,
                arguments,
                error_payload(
                    "ambiguous_service",
                    f"{exc}. Ask the customer which service they mean; do not guess.",
                    text=exc.text,
                    candidates=[c.name for c in exc.candidates],
                ),
            )

        except SchedulingConflictError as exc:
            outcome = await self._conflict_outcome(spec, arguments, exc)

        except TimeoutError:
            logger.warning("Tool %s timed out after %.0fs", name, self._timeout)
            outcome = ToolOutcome(name, arguments, _timeout_payload(spec, dispatched))

        except (SalonAPIError, ToolExecutionError) as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            outcome = ToolOutcome(name, arguments, error_payload("backend_error", str(exc)))

        except Exception:
            logger.exception("Tool %s raised unexpectedly", name)
            outcome = ToolOutcome(
                name,
                arguments,
                error_payload("internal_error", "Something went wrong while running this tool."),
            )

        metrics.record_tool_call(
            name, success=outcome.success, latency_ms=(time.perf_counter() - t0) * 1000,
        )
        return outcome

    async def _conflict_outcome(
        self, spec: ToolSpec, arguments: dict[str, Any], exc: SchedulingConflictError,
    ) -> ToolOutcome:
        logger.info("Tool %s hit a scheduling conflict: %s", spec.name, exc)
        alternatives: list[str] = []
        try:
            alternatives = await asyncio.wait_for(
                appointments.nearest_alternatives(arguments, self._context), self._timeout,
            )
        except (TimeoutError, SalonAPIError, ToolArgumentError) as alt_exc:
            logger.warning("Could not fetch alternatives after conflict: %s", alt_exc)

        override = self._context.role == Role.ADMIN
        message = "That time overlaps an existing appointment."
        if alternatives:
            message += " Nearest free times: " + ", ".join(format_display_time(a) for a in alternatives) + "."
        if override:
            message += " Staff can say 'force' to book it anyway."
        return ToolOutcome(
            tool_name=spec.name,
            arguments=arguments,
            payload=error_payload(
                "scheduling_conflict",
                message,
                alternatives=[format_display_time(a) for a in alternatives],
                override_available=override,
            ),
            conflict=True,
            alternatives=alternatives,
        )


def build_registry(role: Role, context: ToolContext, *, timeout: float = TOOL_TIMEOUT_SECONDS) -> ToolRegistry:
    """The registry for *role*, bound to this turn's context."""
    specs = [spec for spec in ALL_SPECS if role in spec.roles]
    return ToolRegistry(specs, context, timeout=timeout)
