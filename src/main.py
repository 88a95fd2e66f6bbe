"""CLI entry point for the Repair ASAP lead bot.

A terminal chat loop against the configured assistant, going through the
same TurnHandler as the HTTP API (so tool calls really hit the CRM, the
sheet and the calendar).  For production, use the FastAPI server
(src/server.py).

Usage:
    python -m src.main                # normal mode (quiet)
    python -m src.main --debug        # debug mode (shows API calls)
    python -m src.main --print-tools  # dump the assistant tool definitions
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import uuid

from src.agent import LeadAgent, TurnContent, TurnContext, create_lead_agent
from src.orchestrator import TurnError
from src.tools.registry import tool_definitions

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("src").setLevel(logging.DEBUG if debug else logging.INFO)


async def _chat_loop(agent: LeadAgent) -> None:
    thread_id: str | None = None

    while True:
        try:
            user_input = (await asyncio.to_thread(input, "You: ")).strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if user_input.lower() == "new":
            thread_id = None
            print("\n>> The next message starts a new conversation.\n")
            continue

        context = TurnContext(request_id=f"cli-{uuid.uuid4().hex[:8]}", channel="cli")
        try:
            thread_id, result = await agent.turns.handle_turn(
                thread_id, TurnContent(text=user_input), context,
            )
        except TurnError as exc:
            logger.error("[%s] %s: %s", context.request_id, exc.code, exc)
            print(f"\nBot: {exc.user_message}\n")
            continue

        print(f"\nBot: {result.message}\n")
        if result.action is not None:
            print(f"     [action] {result.action.type}: {json.dumps(result.action.payload)}\n")


async def _run() -> None:
    agent = create_lead_agent()
    try:
        await _chat_loop(agent)
    finally:
        await agent.aclose()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Repair ASAP lead bot CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--print-tools", action="store_true",
        help="Print the assistant function definitions as JSON and exit",
    )
    args = parser.parse_args()

    if args.print_tools:
        print(json.dumps(tool_definitions(), indent=2))
        return

    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Repair ASAP Lead Bot - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
