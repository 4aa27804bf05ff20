"""
Main entrypoint: risk analysis CLI and the FastAPI server.

    python main.py analyze <address> [--refresh]
    python main.py status <address>
    python main.py commit <address> [--tier TIER_3]
    python main.py serve [--host 0.0.0.0] [--port 8000]

Env: STELLAR_NETWORK, HORIZON_URL, SOROBAN_RPC_URL, RISK_TIER_CONTRACT_ID,
ORACLE_SECRET_KEY (commit only), RISKTIER_DB_URL, API_HOST, API_PORT, LOG_LEVEL.

API-only: uvicorn backend_risktier.api_server.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any

# Configure structured logging before other imports that may log
from backend_risktier.risk_logging import get_logger

logger = get_logger("main")


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


async def _analyze(address: str, refresh: bool) -> int:
    from backend_risktier.service import RiskTierService

    async with RiskTierService.from_settings() as service:
        analysis = await service.analyze(address, force_refresh=refresh)
    _print_json(analysis.to_dict())
    return 0


async def _status(address: str) -> int:
    from backend_risktier.service import RiskTierService

    async with RiskTierService.from_settings() as service:
        status = service.rate_limit_status(address)
        fallback = service.fallback_record(address)
    payload = status.to_dict()
    payload["address"] = address
    payload["fallback_commit"] = fallback.to_dict() if fallback else None
    _print_json(payload)
    return 0


async def _commit(address: str, tier: str | None) -> int:
    from backend_risktier.service import RiskTierService

    async with RiskTierService.from_settings() as service:
        result = await service.commit(address, chosen_tier=tier)
    _print_json(result.to_dict())
    return 0 if result.successful else 1


def _serve(host: str, port: int) -> int:
    import uvicorn

    from backend_risktier.api_server.server import app

    logger.info("main_server_starting", host=host, port=port)
    uvicorn.run(app, host=host, port=port, log_level=os.getenv("LOG_LEVEL", "info").lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="backend-risktier", description="Stellar address risk tiers")
    sub = parser.add_subparsers(dest="command", required=True)

    p_analyze = sub.add_parser("analyze", help="Fetch history and print the risk analysis")
    p_analyze.add_argument("address")
    p_analyze.add_argument("--refresh", action="store_true", help="Ignore the 1h analysis cache")

    p_status = sub.add_parser("status", help="Print rate-limit status and any fallback commit")
    p_status.add_argument("address")

    p_commit = sub.add_parser("commit", help="Analyze and commit with ORACLE_SECRET_KEY")
    p_commit.add_argument("address")
    p_commit.add_argument("--tier", default=None, help="Chosen tier (defaults to the computed tier)")

    p_serve = sub.add_parser("serve", help="Run the FastAPI server")
    p_serve.add_argument("--host", default=os.getenv("API_HOST", "0.0.0.0").strip())
    p_serve.add_argument("--port", type=int, default=int(os.getenv("API_PORT", "8000").strip() or "8000"))
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    from backend_risktier.core.exceptions import ConfigError, ValidationError

    try:
        if args.command == "analyze":
            return asyncio.run(_analyze(args.address, args.refresh))
        if args.command == "status":
            return asyncio.run(_status(args.address))
        if args.command == "commit":
            return asyncio.run(_commit(args.address, args.tier))
        return _serve(args.host, args.port)
    except (ValidationError, ConfigError) as e:
        logger.error("main_config_error", command=args.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
