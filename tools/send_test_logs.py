#!/usr/bin/env python3
"""
Send Test Logs to an AppLogs collector
Emits a burst of demo entries and reports how delivery went
"""

import argparse
import asyncio
import os
import random
import secrets
from datetime import UTC, datetime

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from applogs import AppLogs, AppLogsConfig, DeliveryError, HostProfile

# Load environment
load_dotenv()

console = Console()


def random_entry() -> tuple[str, str, dict]:
    """One of a few representative application events"""
    entries = [
        ("debug", "Processing request", {"requestId": f"req_{secrets.token_hex(5)}"}),
        (
            "info",
            "User action completed",
            {"userId": random.randint(0, 999), "action": "login", "at": datetime.now(UTC)},
        ),
        (
            "warn",
            "Resource usage high",
            {"cpu": random.random() * 100, "memory": random.random() * 1000, "threshold": 80},
        ),
        (
            "error",
            "Failed to process payment",
            {
                "orderId": f"order_{secrets.token_hex(5)}",
                "error": ValueError("Insufficient funds"),
                "amount": random.randint(0, 999),
            },
        ),
    ]
    return random.choice(entries)


def display_stats(stats: dict, failures: list[str]):
    """Display delivery stats in a formatted table"""
    table = Table(title="AppLogs Delivery", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    transport = stats.pop("transport", {})
    for key, value in {**stats, **{f"transport.{k}": v for k, v in transport.items()}}.items():
        table.add_row(key, str(value))

    console.print("\n")
    console.print(table)

    if failures:
        console.print(f"\n[red]❌ {len(failures)} delivery failures[/red]")
        for failure in failures[:5]:
            console.print(f"  • {failure}")


async def main(args: argparse.Namespace) -> int:
    console.print("[bold magenta]AppLogs Test Sender[/bold magenta]")
    console.print("=" * 50)

    failures: list[str] = []

    def on_error(error: Exception, batch: list):
        failures.append(f"{len(batch)} entries: {error}")

    overrides = {"on_error": on_error, "register_teardown": False}
    if args.endpoint:
        overrides["endpoint"] = args.endpoint
    if args.ephemeral:
        overrides["host_profile"] = HostProfile.EPHEMERAL

    try:
        config = AppLogsConfig.from_env(**overrides)
    except ValueError as e:
        console.print(f"[red]❌ Configuration error: {e}[/red]")
        console.print("Set APPLOGS_API_KEY and APPLOGS_ENDPOINT (or pass --endpoint)")
        return 2

    masked_key = config.api_key[:6] + "..." if len(config.api_key) > 6 else "***"
    console.print(f"  Endpoint: {config.endpoint or config.discovery_url}")
    console.print(f"  API key: {masked_key}")

    logs = AppLogs(config)
    logs.set_context({"service": "applogs-test-sender", "environment": os.getenv("ENVIRONMENT", "development")})

    console.print(f"\n[bold cyan]Sending {args.count} entries ({logs.host_profile.value} host)...[/bold cyan]")
    for _ in range(args.count):
        level, message, metadata = random_entry()
        logs.log(level, message, metadata)
        if args.interval:
            await asyncio.sleep(args.interval)

    try:
        await logs.log_and_wait("info", "Test sender finished", {"count": args.count})
    except DeliveryError as e:
        console.print(f"[yellow]⚠️ Final entry not delivered: {e}[/yellow]")

    await logs.destroy()
    display_stats(logs.get_stats(), failures)

    if failures:
        return 1
    console.print("[green]✅ All entries delivered[/green]")
    return 0


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send demo log entries to an AppLogs collector")
    parser.add_argument("--count", type=int, default=20, help="Entries to send")
    parser.add_argument("--interval", type=float, default=0.0, help="Seconds between entries")
    parser.add_argument("--endpoint", help="Collector endpoint (overrides APPLOGS_ENDPOINT)")
    parser.add_argument("--ephemeral", action="store_true", help="Use the ephemeral host profile")
    return parser.parse_args()


if __name__ == "__main__":
    try:
        raise SystemExit(asyncio.run(main(parse_args())))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
