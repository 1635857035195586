"""Rule-based intent classification for each user turn.

The rules run in a fixed order and the first match wins:

    1. cancellation vocabulary                      → cancel
    2. new-booking vocabulary                       → create (+ clear appointment)
    3. update vocabulary, an appointment id in the
       text, or an active appointment in memory     → update
    4. nobody identified and nothing said yet       → welcome
    5. anything else                                → create

Vocabulary is read from the latest message.  A message with no vocabulary
of its own ("tomorrow at 2pm", "yes") inherits the signal of the most recent
user message that had one, so a multi-turn flow keeps its intent.

The classifier sees the context *before* the new message is appended.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from salon_agent.models import SessionContext
from salon_agent.utils import APPOINTMENT_ID_RE

logger = logging.getLogger(__name__)

CARRY_OVER_WINDOW = 3


class Intent(str, Enum):
    WELCOME = "welcome"
    CREATE = "create"
    UPDATE = "update"
    CANCEL = "cancel"


@dataclass(frozen=True)
class IntentDecision:
    intent: Intent
    clear_appointment: bool = False
    rule: str = ""


_CANCEL_RE = re.compile(r"\b(cancel\w*|call off|call it off)\b", re.IGNORECASE)

_CREATE_RE = re.compile(
    r"\bbook(ing|ed)?\b"
    r"|\bschedul(e|ing)\b"
    r"|\bnew (appointment|booking)\b"
    r"|\b(make|set up|fix) an? (appointment|booking)\b",
    re.IGNORECASE,
)

_UPDATE_RE = re.compile(
    r"\b(update|change|reschedul\w*|move|modify|amend|shift|postpone|push back|bring forward)\b",
    re.IGNORECASE,
)


def _signal(text: str) -> Intent | None:
    """The intent a single message's vocabulary points at, if any."""
    if _CANCEL_RE.search(text):
        return Intent.CANCEL
    if _CREATE_RE.search(text):
        return Intent.CREATE
    if _UPDATE_RE.search(text) or APPOINTMENT_ID_RE.search(text):
        return Intent.UPDATE
    return None


def _carried_signal(text: str, context: SessionContext) -> Intent | None:
    signal = _signal(text)
    if signal is not None:
        return signal
    for previous in context.recent_user_messages(CARRY_OVER_WINDOW):
        signal = _signal(previous)
        if signal is not None:
            logger.debug("Intent signal %s carried over from %r", signal.value, previous[:60])
            return signal
    return None


def classify_intent(text: str, context: SessionContext) -> IntentDecision:
    """Classify *text* against *context* (whose history excludes *text*)."""
    signal = _carried_signal(text, context)

    if signal is Intent.CANCEL:
        decision = IntentDecision(Intent.CANCEL, rule="cancel_vocabulary")
    elif signal is Intent.CREATE:
        decision = IntentDecision(Intent.CREATE, clear_appointment=True, rule="create_vocabulary")
    elif signal is Intent.UPDATE:
        decision = IntentDecision(Intent.UPDATE, rule="update_vocabulary")
    elif context.memory.active_appointment_id:
        decision = IntentDecision(Intent.UPDATE, rule="active_appointment")
    elif context.identity is None and not context.history:
        decision = IntentDecision(Intent.WELCOME, rule="first_contact")
    else:
        decision = IntentDecision(Intent.CREATE, rule="default")

    logger.info("Intent: %s (rule=%s)", decision.intent.value, decision.rule)
    return decision


def apply_intent(context: SessionContext, decision: IntentDecision) -> str | None:
    """Apply the decision's memory side effects; returns a cleared appointment id."""
    if not decision.clear_appointment:
        return None
    cleared = context.memory.clear_appointment_state()
    if cleared:
        logger.info("New booking requested; cleared active appointment %s", cleared)
    return cleared
