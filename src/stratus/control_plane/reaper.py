"""Stale runner droplet reaper, usable as a CLI job or an in-service loop."""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import httpx
import structlog

from ..common.errors import ProviderError
from ..common.metrics import REAPED_DROPLETS
from ..common.observability import configure_logging
from ..common.settings import ReaperSettings
from .digitalocean import RUNNER_TAG, ComputeProvider, DigitalOceanClient

LOGGER = structlog.get_logger("stratus.control_plane.reaper")


def instance_age(created_at: datetime, now: datetime) -> timedelta:
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return now - created_at


async def reap_stale_instances(
    provider: ComputeProvider,
    *,
    max_age: timedelta,
    tag: str = RUNNER_TAG,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    """
    Delete tagged runner droplets older than ``max_age``.

    Listing failures propagate as ``ProviderError``; a failed delete is logged
    and the sweep moves on. Returns counts of what was inspected and done.
    """
    now = now or datetime.now(timezone.utc)
    instances = await provider.list_instances(tag)
    LOGGER.info("Starting stale droplet sweep", tag=tag, count=len(instances), max_age_minutes=max_age.total_seconds() / 60)

    stats = {
        "inspected": len(instances),
        "stale": 0,
        "deleted": 0,
        "failed": 0,
        "skipped": 0,
    }

    for instance in instances:
        if instance.created_at is None:
            stats["skipped"] += 1
            REAPED_DROPLETS.inc("skipped")
            LOGGER.warning("Droplet has no usable creation time, skipping", droplet_id=instance.id, name=instance.name)
            continue

        age = instance_age(instance.created_at, now)
        if age <= max_age:
            continue

        stats["stale"] += 1
        if dry_run:
            LOGGER.info("Would delete stale droplet", droplet_id=instance.id, name=instance.name, age_seconds=int(age.total_seconds()))
            continue

        try:
            await provider.delete_instance(instance.id)
        except ProviderError as exc:
            stats["failed"] += 1
            REAPED_DROPLETS.inc("failed")
            LOGGER.warning("Failed to delete stale droplet", droplet_id=instance.id, name=instance.name, error=str(exc))
            continue
        stats["deleted"] += 1
        REAPED_DROPLETS.inc("deleted")
        LOGGER.info("Deleted stale droplet", droplet_id=instance.id, name=instance.name, age_seconds=int(age.total_seconds()))

    LOGGER.info("Stale droplet sweep completed", stats=stats)
    return stats


async def run_reaper_loop(
    provider: ComputeProvider,
    *,
    interval: float,
    max_age: timedelta,
    tag: str = RUNNER_TAG,
) -> None:
    """Sweep every ``interval`` seconds until cancelled."""

    while True:
        await asyncio.sleep(interval)
        try:
            await reap_stale_instances(provider, max_age=max_age, tag=tag)
        except ProviderError as exc:
            LOGGER.warning("Stale droplet sweep failed", error=str(exc))


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete runner droplets that outlived their job")
    parser.add_argument("--max-age-minutes", type=int, default=None, help="Age after which a droplet is considered stale")
    parser.add_argument("--tag", default=None, help="Droplet tag identifying runner droplets")
    parser.add_argument("--dry-run", action="store_true", help="Report stale droplets without deleting them")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, settings: ReaperSettings) -> int:
    max_age_minutes = args.max_age_minutes if args.max_age_minutes is not None else settings.max_age_minutes
    tag = args.tag or settings.tag
    async with httpx.AsyncClient(timeout=30.0) as http_client:
        provider = DigitalOceanClient(
            token=settings.do_token.get_secret_value(),
            http_client=http_client,
            api_base=str(settings.do_api_url).rstrip("/"),
        )
        try:
            stats = await asyncio.wait_for(
                reap_stale_instances(
                    provider,
                    max_age=timedelta(minutes=max_age_minutes),
                    tag=tag,
                    dry_run=args.dry_run,
                ),
                timeout=settings.timeout_seconds,
            )
        except ProviderError as exc:
            LOGGER.error("Failed to list runner droplets", error=str(exc))
            return 1
        except asyncio.TimeoutError:
            LOGGER.error("Stale droplet sweep timed out", timeout_seconds=settings.timeout_seconds)
            return 1
    print(
        f"inspected={stats['inspected']} stale={stats['stale']} deleted={stats['deleted']} "
        f"failed={stats['failed']} skipped={stats['skipped']}"
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    settings = ReaperSettings()
    configure_logging("stratus-reaper", settings.log_level)
    sys.exit(asyncio.run(run(args, settings)))


if __name__ == "__main__":
    main()
