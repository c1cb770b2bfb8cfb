"""CLI entry point: chat with the engine as patient ``p1`` of clinic ``c1``.

Runs the full processing path (gate, conversation store, routing, engine,
delivery policy) against a seeded in-memory clinic.  For production, use
the FastAPI server (src/server.py).

Usage:
    python -m src.main                          # normal mode (quiet)
    python -m src.main --debug                  # debug mode (shows API calls)
    python -m src.main --clinic-status canceled # watch the gate deny
"""

from __future__ import annotations

import argparse
import logging
import uuid

from dotenv import load_dotenv

from src.bootstrap import build_app_components
from src.errors import ClinicAgentError
from src.models import InboundMessage

logger = logging.getLogger(__name__)

CLINIC_ID = "c1"
PATIENT_ID = "p1"
CHANNEL = "cli"


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("src").setLevel(logging.DEBUG if debug else logging.INFO)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Clinic Agents CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--clinic-status", default="active",
        help="Subscription status of the demo clinic (e.g. active, past_due, canceled)",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Clinic Agents - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    components = build_app_components(subscription_status=args.clinic_status)
    processor = components.processor
    conversation_id: str | None = None

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Have a great day!")
            break

        if user_input.lower() == "new":
            if conversation_id is not None:
                components.conversations.mark_resolved(conversation_id)
                conversation_id = None
            print("\n>> The next message starts a new conversation.\n")
            continue

        try:
            result = processor.process_message(InboundMessage(
                clinic_id=CLINIC_ID,
                patient_id=PATIENT_ID,
                channel=CHANNEL,
                text=user_input,
                external_message_id=uuid.uuid4().hex,
            ))
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except ClinicAgentError as e:
            print(f"\n[skipped] {type(e).__name__}: {e}\n")
            continue
        except Exception:
            logger.exception("Error processing message")
            print("\nSorry, something went wrong. Please try again or type 'new'.\n")
            continue

        conversation_id = result.conversation_id
        print(f"\nAssistant ({result.module}): {result.response_text}")
        if result.tool_call_names:
            print(f"  tools: {', '.join(result.tool_call_names)}")
        if result.queued:
            print("  (queued for later delivery)")
        print()

    components.engine.shutdown()


if __name__ == "__main__":
    main()
