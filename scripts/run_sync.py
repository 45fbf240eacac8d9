"""
Run one manual sync from the command line, outside the API process.

    python -m scripts.run_sync acme
    python -m scripts.run_sync acme --full
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from core.config import load_tenant_configs
from core.database import async_session_maker, engine
from core.exceptions import ConfigurationError, RunInProgressError
from core.logging import setup_logging
from models.base import RunStatus
from sync.notifications import build_notifier
from sync.orchestrator import SyncOrchestrator
from sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)

EXIT_CODES = {
    RunStatus.SUCCESS: 0,
    RunStatus.PARTIAL: 2,
    RunStatus.RETRYING: 3,
    RunStatus.CANCELLED: 4,
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one sync for a tenant")
    parser.add_argument("tenant_id")
    parser.add_argument("--full", action="store_true", help="Full sync without the lookback window")
    parser.add_argument("--tenants", default=None, help="Tenant config file (default: TENANTS_CONFIG_PATH)")
    return parser.parse_args(argv)


async def run_sync(sync_scheduler: SyncScheduler, tenant_id: str, full: bool = False) -> int:
    """Run the sync, print its summary as JSON and return the process exit code"""
    try:
        summary = await sync_scheduler.trigger_now(tenant_id, full=full, wait=True)
    except ConfigurationError:
        logger.error(f"Unknown tenant {tenant_id}")
        return 1
    except RunInProgressError:
        logger.error(f"A sync is already running for {tenant_id}")
        return 1

    print(json.dumps(summary.as_dict(), indent=2))
    if summary.skipped:
        return 0
    return EXIT_CODES.get(summary.status, 1)


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    orchestrator = SyncOrchestrator(async_session_maker, notifier=build_notifier())
    sync_scheduler = SyncScheduler(orchestrator, load_tenant_configs(args.tenants))
    try:
        return await run_sync(sync_scheduler, args.tenant_id, full=args.full)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(main()))
