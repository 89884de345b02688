#!/usr/bin/env python3
"""
Tutor Pipeline - Command Line Interface

Commands:
    chat          - Start an interactive tutoring session
    ask           - Run a single turn
    responders    - List the registered responders
    check-config  - Validate configuration

Usage:
    python -m tutor.cli chat --subject math
    python -m tutor.cli ask "What is 1/2 + 1/4?"
    python -m tutor.cli responders

For help on a specific command:
    python -m tutor.cli <command> --help
"""

import argparse
import asyncio
import sys
import uuid
from pathlib import Path
from typing import Any, Dict

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tutor.logger import init_logging, get_logger
from tutor.config import settings

# Initialize logging
init_logging()
logger = get_logger(__name__)


def _learner_context(args: argparse.Namespace) -> Dict[str, Any]:
    context: Dict[str, Any] = {}
    if getattr(args, "subject", None):
        context["subject"] = args.subject
    if getattr(args, "grade", None):
        context["grade"] = args.grade
    if getattr(args, "lesson", None):
        context["lesson"] = args.lesson
    return context


def _print_result(result, audio_dir: Path = None) -> None:
    """Print one delivery result the way a learner would see it."""
    if not result.ok:
        for event in result.events:
            print(f"❌ {event.to_dict().get('message', '')}")
        return

    for event in result.events:
        data = event.to_dict()
        if data["type"] == "text":
            print(f"Tutor ({result.responder_id}): {data['text']}")
        elif data["type"] == "complete":
            flags = [data["validation"], data["synthesis_mode"]]
            if data["handoff_target"]:
                flags.append(f"next: {data['handoff_target']}")
            print(f"   [{', '.join(f for f in flags if f)}]")

    if result.visual_payload:
        print("   🖼️  Diagram attached")

    if audio_dir and result.audio:
        audio_dir.mkdir(parents=True, exist_ok=True)
        out_file = audio_dir / f"{result.session_id}_{result.turn_id}.mp3"
        out_file.write_bytes(result.audio)
        print(f"   🔊 {out_file}")
    print()


async def _chat(args: argparse.Namespace) -> int:
    from tutor.pipeline.orchestrator import TurnRequest, TutorPipeline

    pipeline = await TutorPipeline.create()
    await pipeline.start()

    session_id = args.session or uuid.uuid4().hex[:8]
    context = _learner_context(args)
    audio_dir = Path(args.save_audio) if args.save_audio else None
    print(f"📚 Session {session_id} with {len(pipeline.router.registry)} responders\n")

    try:
        if args.auto_start:
            result = await pipeline.process_turn(TurnRequest(session_id, "[AUTO_START] Hello", context))
            _print_result(result, audio_dir)

        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n👋 Goodbye!")
                break

            if not user_input:
                continue
            if user_input.lower() == "/quit":
                print("\n👋 Goodbye!")
                break
            if user_input.lower() == "/stats":
                for key, value in pipeline.stats.items():
                    print(f"   {key}: {value}")
                print()
                continue
            if user_input.lower() == "/reset":
                await pipeline.end_session(session_id)
                print("🗑️  Session reset.\n")
                continue

            result = await pipeline.process_turn(TurnRequest(session_id, user_input, context))
            _print_result(result, audio_dir)
    finally:
        await pipeline.stop()
    return 0


def cmd_chat(args: argparse.Namespace) -> int:
    """
    Start an interactive tutoring session.
    """
    print("\n" + "=" * 60)
    print("🎓 Tutor - Interactive Session")
    print("=" * 60)
    print("Commands:")
    print("  /reset  - Start the session over")
    print("  /stats  - Show statistics")
    print("  /quit   - Exit")
    print("-" * 60)

    try:
        return asyncio.run(_chat(args))
    except Exception as e:
        print(f"❌ Chat failed: {e}")
        logger.exception("Chat error")
        return 1


async def _ask(args: argparse.Namespace) -> int:
    from tutor.pipeline.orchestrator import TurnRequest, TutorPipeline

    pipeline = await TutorPipeline.create()
    await pipeline.start()
    try:
        result = await pipeline.process_turn(
            TurnRequest(args.session or uuid.uuid4().hex[:8], args.text, _learner_context(args))
        )
        _print_result(result, Path(args.save_audio) if args.save_audio else None)
        return 0 if result.ok else 1
    finally:
        await pipeline.stop()


def cmd_ask(args: argparse.Namespace) -> int:
    """Run a single turn."""
    try:
        return asyncio.run(_ask(args))
    except Exception as e:
        print(f"❌ Turn failed: {e}")
        logger.exception("Turn error")
        return 1


def cmd_responders(args: argparse.Namespace) -> int:
    """List the responders in the registry."""
    from tutor.core.registry import RegistryError, ResponderRegistry

    path = args.registry or settings.routing.path
    try:
        registry = ResponderRegistry.load(path)
    except RegistryError as e:
        print(f"❌ {e}")
        return 1

    print(f"\n📋 Responders ({path}):")
    print("-" * 50)
    for responder in registry:
        flags = [responder.role, responder.tier]
        if responder.skip_validation:
            flags.append("no validation")
        print(f"   {responder.id:<22} {responder.name:<24} [{', '.join(flags)}]")
    return 0


def cmd_check_config(args: argparse.Namespace) -> int:
    """Validate configuration and report which providers are usable."""
    print("\n🔧 Configuration")
    print("-" * 50)
    print(f"   Environment:        {settings.app_env}")
    print(f"   Routing policy:     {settings.routing.policy}")
    print(f"   Synthesis limit:    {settings.synthesis.max_concurrency} concurrent")
    print(f"   Approval threshold: {settings.validation.approval_threshold:.2f}")
    print(f"   Speech:             {'configured' if settings.speech.is_configured else 'not configured'}")

    try:
        settings.validate_all()
    except ValueError as e:
        print(f"\n❌ {e}")
        return 1

    print("\n✅ Configuration is valid")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser with all commands."""
    parser = argparse.ArgumentParser(
        prog="tutor",
        description="Tutoring response pipeline CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Interactive session:
    python -m tutor.cli chat
    python -m tutor.cli chat --subject math --grade 5 --auto-start

  Single turn:
    python -m tutor.cli ask "Why is the sky blue?" --save-audio out/

  System management:
    python -m tutor.cli responders
    python -m tutor.cli check-config
        """
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add_turn_options(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--session", help="Session id (default: random)")
        sub.add_argument("--subject", help="Lesson subject for the learner context")
        sub.add_argument("--grade", help="Learner grade level")
        sub.add_argument("--lesson", help="Lesson title")
        sub.add_argument("--save-audio", metavar="DIR", help="Write each turn's audio to DIR")

    chat_parser = subparsers.add_parser(
        "chat",
        help="Start an interactive tutoring session"
    )
    add_turn_options(chat_parser)
    chat_parser.add_argument(
        "--auto-start",
        action="store_true",
        help="Let the tutor open the session"
    )
    chat_parser.set_defaults(func=cmd_chat)

    ask_parser = subparsers.add_parser(
        "ask",
        help="Run a single turn"
    )
    ask_parser.add_argument(
        "text",
        help="What the learner says"
    )
    add_turn_options(ask_parser)
    ask_parser.set_defaults(func=cmd_ask)

    responders_parser = subparsers.add_parser(
        "responders",
        help="List registered responders"
    )
    responders_parser.add_argument(
        "--registry",
        help=f"Registry file (default: {settings.routing.registry_path})"
    )
    responders_parser.set_defaults(func=cmd_responders)

    check_parser = subparsers.add_parser(
        "check-config",
        help="Validate configuration"
    )
    check_parser.set_defaults(func=cmd_check_config)

    return parser


def main() -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    if args.verbose:
        import logging
        logging.getLogger().setLevel(logging.DEBUG)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
