#!/usr/bin/env python3
"""
Command-line console for dispatching commands through the OpsDeck runtime.

The console runs a short-lived ``CommandLifecycle`` against the configured
Redis streams: it dispatches one command, waits for its outcome and prints
the resulting history entry as JSON. It can also publish agent status
updates to the status feed.
"""

import argparse
import asyncio
import json
import sys
from typing import Optional, Sequence

from opsdeck_contracts import Agent, AgentStatus, AgentStatusUpdate, HistoryEntry

from opsdeck_runtime.config import RuntimeSettings
from opsdeck_runtime.engine import CommandLifecycle, create_lifecycle
from opsdeck_runtime.errors import OpsDeckError
from opsdeck_runtime.logging_utils import configure_logging
from opsdeck_runtime.transport import RedisStreamTransport


def _print_entry(entry: HistoryEntry) -> None:
    print(json.dumps(entry.model_dump(mode="json", exclude_none=True), indent=2))


def _target_agent(args) -> Agent:
    return Agent(
        agent_id=args.agent,
        display_name=args.agent,
        status=AgentStatus.ONLINE,
        platform=args.platform,
    )


async def _submit_and_wait(lifecycle: CommandLifecycle, args, natural: bool) -> int:
    lifecycle.start()
    try:
        if natural:
            correlation_id = await lifecycle.submit_natural(args.agent, args.text)
        else:
            correlation_id = await lifecycle.submit_raw(
                args.agent, args.text, timeout_ms=args.timeout_ms
            )
        entry = await lifecycle.wait_for(correlation_id)
    except OpsDeckError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await lifecycle.shutdown()
    _print_entry(entry)
    return 0 if entry.status.value == "completed" else 1


def cmd_send(args, settings: RuntimeSettings) -> int:
    """Dispatch raw shell text."""
    lifecycle = create_lifecycle(settings, agents=[_target_agent(args)])
    return asyncio.run(_submit_and_wait(lifecycle, args, natural=False))


def cmd_ask(args, settings: RuntimeSettings) -> int:
    """Translate natural language, then dispatch."""
    if not settings.translation_endpoint:
        print("Error: OPSDECK_TRANSLATION_ENDPOINT is not configured", file=sys.stderr)
        return 1
    lifecycle = create_lifecycle(settings, agents=[_target_agent(args)])
    return asyncio.run(_submit_and_wait(lifecycle, args, natural=True))


def cmd_status(args, settings: RuntimeSettings) -> int:
    """Publish an agent status update to the status feed."""

    async def _publish() -> str:
        transport = RedisStreamTransport.from_url(
            settings.redis_url,
            events_stream=settings.events_stream,
            status_stream=settings.status_stream,
            sender=settings.console_id,
        )
        try:
            return await transport.publish_status(
                AgentStatusUpdate(agent_id=args.agent, status=AgentStatus(args.status))
            )
        finally:
            await transport.close()

    entry_id = asyncio.run(_publish())
    print(f"Published {args.status} for {args.agent} ({entry_id})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dispatch commands to OpsDeck agents")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    parser_send = subparsers.add_parser("send", help="Send raw shell text to an agent")
    parser_send.add_argument("agent", help="Target agent id")
    parser_send.add_argument("text", help="Command text")
    parser_send.add_argument("--platform", "-p", default="linux", help="Agent platform hint")
    parser_send.add_argument("--timeout-ms", "-t", type=int, default=None,
                             help="Override the suggested timeout")

    parser_ask = subparsers.add_parser("ask", help="Translate natural language and dispatch it")
    parser_ask.add_argument("agent", help="Target agent id")
    parser_ask.add_argument("text", help="What the command should do")
    parser_ask.add_argument("--platform", "-p", default="linux", help="Agent platform hint")

    parser_status = subparsers.add_parser("status", help="Publish an agent status update")
    parser_status.add_argument("agent", help="Agent id")
    parser_status.add_argument("status", choices=[status.value for status in AgentStatus])

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    configure_logging()
    settings = RuntimeSettings()
    commands = {
        "send": cmd_send,
        "ask": cmd_ask,
        "status": cmd_status,
    }
    return commands[args.command](args, settings)


if __name__ == "__main__":
    sys.exit(main())
