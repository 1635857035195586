"""CLI entry point for the salon booking assistant.

A terminal chat loop for development.  For production, use the FastAPI
server (salon_agent/server.py).

Usage:
    python -m salon_agent.main              # customer session
    python -m salon_agent.main --admin      # staff session
    python -m salon_agent.main --debug      # show API calls and state changes
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from salon_agent.agent import Orchestrator, create_orchestrator
from salon_agent.models import Role
from salon_agent.prompts import get_welcome_message

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("salon_agent").setLevel(logging.DEBUG if debug else logging.INFO)


async def _chat_loop(orchestrator: Orchestrator, role: Role) -> None:
    session_id = str(uuid.uuid4())
    logger.info("Started new session: %s (role=%s)", session_id, role.value)
    context = await orchestrator.get_session(session_id, role)
    print(f"Assistant: {get_welcome_message(context)}\n")

    while True:
        try:
            user_input = (await asyncio.to_thread(input, "You: ")).strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        command = user_input.lower()
        if command in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if command == "new":
            session_id = str(uuid.uuid4())
            context = await orchestrator.get_session(session_id, role)
            print(f"\n>> New session started: {session_id[:8]}...")
            print(f"Assistant: {get_welcome_message(context)}\n")
            continue

        if command == "clear":
            context = await orchestrator.reset_session(session_id, role)
            print("\n>> Context cleared.")
            print(f"Assistant: {get_welcome_message(context)}\n")
            continue

        try:
            reply = await orchestrator.handle_turn(session_id, role, user_input)
            print(f"\nAssistant: {reply}\n")
        except Exception:
            logger.exception("Error processing message")
            print("\nAssistant: I'm sorry, something went wrong. Please try again,")
            print("           or type 'clear' to start over.\n")


def main():
    parser = argparse.ArgumentParser(description="Salon booking assistant CLI")
    parser.add_argument("--admin", action="store_true", help="Chat as salon staff")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    _configure_logging(debug=args.debug)
    role = Role.ADMIN if args.admin else Role.CUSTOMER

    print("\n" + "=" * 60)
    print(f"  Salon Booking Assistant - CLI Chat ({role.value})")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session,")
    print("            'clear' to reset this session's context.")
    print("=" * 60 + "\n")

    asyncio.run(_chat_loop(create_orchestrator(), role))


if __name__ == "__main__":
    main()
