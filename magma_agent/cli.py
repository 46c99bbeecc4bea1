"""Command line entry point: send one message to an agent built from a settings file."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .agent import MagmaAgent
from .config import load_agent_settings
from .errors import ConfigError, MagmaError
from .logging_utils import configure_logging
from .messages import StreamChunk, user_message


class _ConsoleAgent(MagmaAgent):
    def on_stream_chunk(self, chunk: Optional[StreamChunk]) -> None:
        if chunk is not None:
            text = chunk.delta.get_text()
            if text:
                print(text, end="", flush=True)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one Magma agent turn")
    parser.add_argument("config", help="Path to agent settings YAML")
    parser.add_argument("-m", "--message", help="User message (default: read from stdin)")
    parser.add_argument("--stream", action="store_true", help="Stream the response as it arrives")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


async def _run(agent: MagmaAgent, text: str) -> Optional[str]:
    agent.add_message(user_message(text))
    try:
        response = await agent.main()
    finally:
        await agent.cleanup()
    return response.get_text() if response is not None else None


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    configure_logging("DEBUG" if args.verbose else None)

    try:
        settings = load_agent_settings(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if args.stream:
        settings.stream = True

    text = args.message if args.message is not None else sys.stdin.read()
    if not text.strip():
        print("Error: empty message", file=sys.stderr)
        return 1

    try:
        agent = _ConsoleAgent.from_settings(settings)
        reply = asyncio.run(_run(agent, text))
    except KeyboardInterrupt:
        print("\nOperation interrupted by user", file=sys.stderr)
        return 1
    except (MagmaError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if reply is None:
        print("Error: request was aborted", file=sys.stderr)
        return 1
    if args.stream:
        print()
    else:
        print(reply)
    return 0


if __name__ == "__main__":
    sys.exit(main())
