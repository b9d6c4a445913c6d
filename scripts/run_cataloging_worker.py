#!/usr/bin/env python3
"""Catalog a user's Google Calendar into the meeting graph.

Usage:
    python scripts/run_cataloging_worker.py --email alice@example.com --access-token ya29...
    python scripts/run_cataloging_worker.py --email alice@example.com --tokens worker-tokens.json --months 6

Environment Variables:
    MEETPREP_NEO4J_URI / MEETPREP_NEO4J_USER / MEETPREP_NEO4J_PASSWORD - graph store
    GOOGLE_ACCESS_TOKEN - used when neither --access-token nor --tokens is given
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

import structlog
from dotenv import load_dotenv

# Make the repository root importable when run as a plain script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from libs.graph.neo4j_client import get_graph_service  # noqa: E402
from libs.worker.cataloging import CatalogingWorker  # noqa: E402

load_dotenv(".env.local")

logger = structlog.get_logger()


def load_tokens(args: argparse.Namespace):
    """Resolve OAuth tokens from the command line, a token file or the environment."""
    if args.access_token:
        return args.access_token
    if args.tokens:
        with open(args.tokens, "r", encoding="utf-8") as f:
            return json.load(f)
    token = os.getenv("GOOGLE_ACCESS_TOKEN")
    if not token:
        raise SystemExit("No access token: pass --access-token, --tokens or set GOOGLE_ACCESS_TOKEN")
    return token


async def run(args: argparse.Namespace) -> int:
    graph = get_graph_service()
    worker = CatalogingWorker(graph=graph)
    user = {"id": args.user_id, "email": args.email, "name": args.name}

    try:
        result = await worker.process_calendar_data(
            load_tokens(args),
            user,
            {"monthsBack": args.months, "batchSize": args.batch_size},
        )
    finally:
        await graph.close()

    print(json.dumps(result, indent=2, default=str))
    return 0 if result["status"] == "completed" else 1


def main():
    parser = argparse.ArgumentParser(description="Catalog Google Calendar events into Neo4j")
    parser.add_argument("--email", required=True, help="Email of the user being cataloged")
    parser.add_argument("--name", help="Display name of the user")
    parser.add_argument("--user-id", help="Stable user id stored on the Person node")
    parser.add_argument("--access-token", help="Google OAuth access token")
    parser.add_argument("--tokens", type=Path, help="Path to a saved tokens JSON file")
    parser.add_argument("--months", type=int, default=6, help="Months of history to catalog")
    parser.add_argument("--batch-size", type=int, default=100, help="Events fetched per API page")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Starting cataloging worker", email=args.email, months=args.months)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
