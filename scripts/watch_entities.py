#!/usr/bin/env python3
"""Live view of orders and bookings as seen by one sync engine.

Connects with ``RESTOSYNC_*`` environment configuration, starts polling
and the push channel, and prints every store change and health change
until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from restosync import EntityKind, RestoSyncClient, StoreDelta, SyncConfig, SyncHealth  # noqa: E402

_LOG = logging.getLogger("watch_entities")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Watch restaurant orders and bookings.")
    parser.add_argument(
        "--kind",
        choices=["order", "booking", "all"],
        default="all",
        help="Entity kind to track.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Poll interval in seconds (defaults to RESTOSYNC_POLL_INTERVAL).",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--no-push",
        action="store_true",
        help="Poll only; do not connect the push channel.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> int:
    overrides = {"push_enabled": False} if args.no_push else {}
    config = SyncConfig.from_env(**overrides)
    kinds = [EntityKind.ORDER, EntityKind.BOOKING] if args.kind == "all" else [EntityKind(args.kind.upper())]

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with RestoSyncClient(config, kinds=kinds) as client:

        def _on_delta(delta: StoreDelta) -> None:
            for entity_id in sorted(delta.added | delta.changed):
                entity = client.get(entity_id)
                if entity is None:
                    continue
                marker = "+" if entity_id in delta.added else "~"
                effective = client.get_effective_status(entity_id)
                print(f"{marker} {entity.kind:<7} {entity.id:<24} v{entity.version:<14} {entity.status} -> {effective}")
            for entity_id in sorted(delta.removed):
                print(f"- {entity_id}")

        def _on_health(health: SyncHealth) -> None:
            _LOG.warning(
                "health: push=%s live=%s stale=%s out_of_sync=%s ledger_degraded=%s",
                health.push_state,
                health.live_updates_available,
                sorted(health.stale_kinds),
                sorted(health.out_of_sync),
                health.ledger_degraded,
            )

        client.subscribe(_on_delta)
        client.subscribe_health(_on_health)
        await client.start(args.interval)
        _LOG.info("Tracking %d entities", len(client.snapshot()))

        try:
            if args.duration > 0:
                await asyncio.wait_for(stop.wait(), timeout=args.duration)
            else:
                await stop.wait()
        except TimeoutError:
            pass
    return 0


def main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
