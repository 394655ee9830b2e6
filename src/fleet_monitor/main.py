"""
Fleet Monitor - Main Entry Point

Headless live view of a proxy-node fleet: keeps a dashboard snapshot in sync
with the backend over polling plus the push channel, and logs the fleet summary
as it changes.

Usage:
    python -m fleet_monitor.main                          # live monitor (default account)
    python -m fleet_monitor.main --account-id acct_1      # live monitor for an account
    python -m fleet_monitor.main --share-token TOKEN      # live monitor via share link
    python -m fleet_monitor.main --mode snapshot          # print one snapshot summary and exit
    python -m fleet_monitor.main --mode shares            # list share links
    python -m fleet_monitor.main --mode share --expire-in 24h
    python -m fleet_monitor.main --mode revoke --share-id ID

Environment Variables:
    MONITOR_BASE_URL              Backend origin (default: http://localhost:8000)
    MONITOR_WS_URL                Push channel origin (default: derived from base URL)
    MONITOR_AUTH_TOKEN            Bearer token for authenticated views
    MONITOR_ACCOUNT_ID            Account to view
    MONITOR_SHARE_TOKEN           Share token to view (wins over account id)
    MONITOR_REFRESH_INTERVAL      Seconds between snapshot refreshes (default: 30)
    MONITOR_HISTORY_TTL           Seconds a history result stays cached (default: 60)
    MONITOR_LOG_LEVEL             Logging level (DEBUG/INFO/WARNING/ERROR)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys

from .config import MonitorSettings
from .sync.client import MonitorApiClient
from .sync.errors import MonitorError
from .sync.models import ExpireIn
from .sync.reconciler import summarize
from .sync.session import run_monitor, scope_from_settings

# Configure logging before anything else logs
LOG_LEVEL = os.environ.get("MONITOR_LOG_LEVEL", os.environ.get("LOG_LEVEL", "INFO")).upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Fleet Monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--mode",
        choices=["live", "snapshot", "shares", "share", "revoke"],
        default="live",
        help="What to do (default: live)",
    )
    parser.add_argument("--base-url", type=str, help="Backend origin")
    parser.add_argument("--account-id", type=str, help="Account to view")
    parser.add_argument("--share-token", type=str, help="Share token to view")
    parser.add_argument(
        "--expire-in",
        choices=[e.value for e in ExpireIn],
        default=ExpireIn.ONE_DAY.value,
        help="Share link lifetime (--mode share)",
    )
    parser.add_argument("--share-id", type=str, help="Share link to revoke (--mode revoke)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> MonitorSettings:
    """Environment settings with command line overrides applied."""
    overrides = {}
    if args.base_url:
        overrides["base_url"] = args.base_url
    if args.account_id:
        overrides["account_id"] = args.account_id
    if args.share_token:
        overrides["share_token"] = args.share_token
    if args.log_level:
        overrides["log_level"] = args.log_level
    return MonitorSettings(**overrides)


async def _print_snapshot(settings: MonitorSettings) -> int:
    scope = scope_from_settings(settings)
    async with MonitorApiClient(
        settings.base_url,
        headers=settings.headers,
        timeout=settings.request_timeout,
        max_retries=settings.max_retries,
    ) as client:
        dashboard = await scope.load_dashboard(client)

    summary = summarize(dashboard)
    print(json.dumps({
        "account_id": dashboard.account_id,
        "account_name": dashboard.account_name,
        "updated_at": dashboard.updated_at.isoformat() if dashboard.updated_at else None,
        "nodes": len(dashboard.nodes),
        "online": summary.online,
        "offline": summary.offline,
        "disabled": summary.disabled,
        "total_requests": summary.total_requests,
        "failed_requests": summary.failed_requests,
        "success_rate": round(summary.success_rate, 2),
        "avg_response_time": round(summary.avg_response_time, 1),
    }, indent=2, ensure_ascii=False))
    return 0


async def _manage_shares(settings: MonitorSettings, args: argparse.Namespace) -> int:
    async with MonitorApiClient(
        settings.base_url,
        headers=settings.headers,
        timeout=settings.request_timeout,
        max_retries=settings.max_retries,
    ) as client:
        if args.mode == "shares":
            for share in await client.list_shares(settings.account_id):
                state = "revoked" if share.revoked else ("expired" if share.is_expired else "active")
                expires = share.expire_at.isoformat() if share.expire_at else "never"
                print(f"{share.id}\t{state}\t{expires}\t{share.share_url}")
            return 0

        if args.mode == "share":
            if not settings.account_id:
                logger.error("--account-id (or MONITOR_ACCOUNT_ID) is required to create a share")
                return 1
            share = await client.create_share(settings.account_id, ExpireIn(args.expire_in))
            print(share.share_url)
            return 0

        if not args.share_id:
            logger.error("--share-id is required to revoke a share")
            return 1
        await client.revoke_share(args.share_id)
        return 0


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    settings = build_settings(args)
    logging.getLogger().setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    try:
        if args.mode == "live":
            await run_monitor(settings)
            return 0
        if args.mode == "snapshot":
            return await _print_snapshot(settings)
        return await _manage_shares(settings, args)
    except MonitorError as e:
        logger.error(str(e))
        return 1
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main() -> int:
    """Main entry point."""
    args = parse_args()

    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
