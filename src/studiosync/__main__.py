"""Entry point: python -m studiosync [status|resume <kind>|history|sync]

- No args / "status": Owner, quota usage and the last job per kind
- "resume <kind>":    Resume the persisted job of that kind until it settles
- "history":          Local history titles, newest first
- "sync":             Re-push pending records and retry failed deletes

The owner comes from STUDIOSYNC_OWNER (unset = guest).
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from studiosync.config import StudioConfig, load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _build_studio(config: StudioConfig):
    from studiosync.core import Studio
    from studiosync.session import SessionContext

    owner = os.getenv("STUDIOSYNC_OWNER") or None
    membership = os.getenv("STUDIOSYNC_MEMBERSHIP", "free")
    return Studio(config, session=SessionContext(owner, membership))


def _run_status(config: StudioConfig) -> None:
    from studiosync.core import JOB_KINDS
    from studiosync.quota import QUOTA_KINDS

    studio = _build_studio(config)
    print(f"owner: {studio.owner_id or 'guest'} ({studio.session.membership})")
    counters = studio.ledger.counters()
    print(f"credits: {counters.credits}")
    for kind in QUOTA_KINDS:
        limit = studio.ledger.limit(kind)
        shown = "unlimited" if limit == float("inf") else int(limit)
        print(f"  {kind:<13} {counters.used(kind):>4} / {shown}")
    for kind in JOB_KINDS:
        job = studio.tracker.current_job(studio.owner_id, kind)
        if job is None:
            print(f"{kind} job: none")
        else:
            print(f"{kind} job: {job.status.value} {job.progress_pct:.0f}% {job.result or job.error or ''}")


async def _resume(config: StudioConfig, kind: str) -> int:
    studio = _build_studio(config)
    try:
        job = await studio.tracker.resume(studio.owner_id, kind)
    finally:
        await studio.close()
    if job is None:
        print(f"No {kind} job to resume")
        return 1
    print(f"{job.id}: {job.status.value} {job.progress_pct:.0f}%")
    if job.result:
        print(job.result)
    if job.error:
        print(f"error ({job.error_kind}): {job.error}")
    return 0


def _run_history(config: StudioConfig) -> None:
    studio = _build_studio(config)
    for record in studio.histories.list(studio.owner_id):
        print(f"{record.id}  [{record.kind.value}] {record.title}  ({record.sync_status.value})")


async def _sync(config: StudioConfig) -> None:
    studio = _build_studio(config)
    try:
        counts = await studio.sync_pending()
    finally:
        await studio.close()
    for collection, accepted in counts.items():
        print(f"{collection}: {accepted} synced")


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else "status"
    config = load_config()
    _setup_logging(config.log_level)

    if cmd == "status":
        _run_status(config)
    elif cmd == "resume" and len(sys.argv) > 2:
        sys.exit(asyncio.run(_resume(config, sys.argv[2])))
    elif cmd == "history":
        _run_history(config)
    elif cmd == "sync":
        asyncio.run(_sync(config))
    else:
        print("Usage: python -m studiosync [status|resume <kind>|history|sync]")
        print("  status         Owner, quota usage and last job per kind (default)")
        print("  resume <kind>  Resume a persisted image/video job until it settles")
        print("  history        List local history titles")
        print("  sync           Push pending records to the remote store")
        sys.exit(1)


if __name__ == "__main__":
    main()
