"""CLI entry point for the Poppa concierge backend.

The notification commands are what a cron job runs in place of hitting
the HTTP endpoints; ``chat`` talks to the agent through the same bridge
the WhatsApp webhook uses, without sending anything over WhatsApp.

Usage:
    python -m src.main chat --phone +13055550100
    python -m src.main notify [--minutes 15]
    python -m src.main confirm [--time 11:59]
    python -m src.main init-db
    python -m src.main --debug notify      # debug mode (shows API calls)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty client loggers even if root is WARNING
        for name in ("httpx", "httpcore", "neo4j", "twilio"):
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("src").setLevel(logging.DEBUG if debug else logging.INFO)


def _build_services():
    # Imported here so ``--help`` works without a configured environment
    from src.services.agent_client import AgentClient
    from src.services.bridge import WebhookBridge
    from src.services.graph_store import GraphStore
    from src.services.memory import ConversationMemory
    from src.services.messaging import TwilioMessenger
    from src.services.notifications import NotificationDispatcher

    store = GraphStore().init()
    memory = ConversationMemory()
    messenger = TwilioMessenger()
    agent = AgentClient()
    return {
        "store": store,
        "memory": memory,
        "messenger": messenger,
        "agent": agent,
        "dispatcher": NotificationDispatcher(store, memory, messenger),
        "bridge": WebhookBridge(store, memory, messenger, agent),
    }


def _close(services: dict) -> None:
    for name in ("agent", "messenger", "memory", "store"):
        services[name].close()


def _print_results(results) -> int:
    failed = 0
    for result in results:
        line = f"  {result.user_id}: {result.status}"
        if result.error:
            line += f" ({result.error})"
            failed += 1
        print(line)
    print(f"{len(results)} notification(s), {failed} failed")
    return 1 if failed else 0


def _chat(services: dict, phone: str) -> int:
    """Run the interactive CLI chat loop as *phone*."""
    bridge = services["bridge"]

    print("\n" + "=" * 60)
    print("  Poppa - CLI Chat")
    print("=" * 60)
    print(f"  Chatting as {phone}. Type 'quit' to exit.")
    print("=" * 60 + "\n")

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            return 0

        if not user_input:
            continue
        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            return 0

        try:
            reply = bridge.ask(user_input, phone)
            print(f"\nPoppa: {reply.response}\n")
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            return 0
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nPoppa: I'm sorry, something went wrong: {e}\n")


def _init_db(services: dict) -> int:
    store = services["store"]
    store.verify_connectivity()
    store.ensure_schema()
    print("Neo4j reachable; constraints and indexes in place.")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Poppa concierge CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    chat = commands.add_parser("chat", help="Talk to the agent as a given phone number")
    chat.add_argument("--phone", required=True, help="E.164 phone number, e.g. +13055550100")

    notify = commands.add_parser("notify", help="Send reminders for doses due now")
    notify.add_argument("--minutes", type=int, default=None, help="Look-ahead window in minutes")

    confirm = commands.add_parser("confirm", help="Run the twice-daily confirmation check")
    confirm.add_argument("--time", default=None, help="HH:MM override (test mode only)")

    commands.add_parser("init-db", help="Check Neo4j and create constraints")

    args = parser.parse_args(argv)

    load_dotenv()
    _configure_logging(debug=args.debug)

    services = _build_services()
    try:
        if args.command == "chat":
            return _chat(services, args.phone)
        if args.command == "notify":
            results = asyncio.run(
                services["dispatcher"].run_due_reminders(look_ahead_minutes=args.minutes)
            )
            return _print_results(results)
        if args.command == "confirm":
            results = asyncio.run(services["dispatcher"].run_confirmation(override=args.time))
            return _print_results(results)
        return _init_db(services)
    finally:
        _close(services)


if __name__ == "__main__":
    sys.exit(main())
