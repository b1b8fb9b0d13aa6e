from __future__ import annotations

import argparse
import asyncio
import os
import sys

from history.client import HistoryAPIError, HistoryClient
from history.models.task import Location


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="history-research",
        description="Research the history of a location and print the report.",
    )
    parser.add_argument("--location", required=True, help="Location name, e.g. 'Tristan da Cunha'")
    parser.add_argument("--lat", type=float, default=0.0)
    parser.add_argument("--lng", type=float, default=0.0)
    parser.add_argument("--instructions", default=None, help="Custom research instructions")
    parser.add_argument(
        "--base-url",
        default=os.getenv("HISTORY_BASE_URL", "http://localhost:8000"),
        help="History backend URL (default: $HISTORY_BASE_URL or http://localhost:8000)",
    )
    parser.add_argument(
        "--token",
        default=os.getenv("VALYU_ACCESS_TOKEN"),
        help="Valyu access token (default: $VALYU_ACCESS_TOKEN)",
    )
    parser.add_argument("--poll-interval", type=float, default=2.0)
    return parser.parse_args(argv)


def render(event: dict) -> str | None:
    """Terminal line for one event, or None when it has nothing to show."""
    kind = event.get("type")
    if kind == "task_created":
        return f"Task {event.get('taskId')} created"
    if kind in ("status", "continue_polling"):
        return event.get("message")
    if kind == "progress":
        return f"[{event.get('current_step')}/{event.get('total_steps')}] {event.get('message')}"
    if kind == "message_update" and event.get("content_type") == "tool_use":
        data = event.get("data") or {}
        return f"  tool: {data.get('name', 'unknown')}"
    if kind == "sources":
        return f"\n{len(event.get('sources') or [])} sources"
    if kind == "error":
        return f"Error: {event.get('error')}"
    return None


async def _run(args: argparse.Namespace) -> int:
    location = Location(name=args.location, lat=args.lat, lng=args.lng)
    report = ""
    async with HistoryClient(args.base_url, access_token=args.token, poll_interval=args.poll_interval) as client:
        try:
            async for event in client.research(location, custom_instructions=args.instructions):
                if event.get("type") == "content":
                    report = event.get("content") or ""
                line = render(event)
                if line:
                    print(line, file=sys.stderr)
                if event.get("type") == "error":
                    return 1
        except HistoryAPIError as e:
            print(f"Request failed: {e.message} ({e.code})", file=sys.stderr)
            return 2
    print(report)
    return 0


def main(argv: list[str] | None = None) -> int:
    return asyncio.run(_run(parse_args(argv)))


if __name__ == "__main__":
    raise SystemExit(main())
