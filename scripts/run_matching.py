#!/usr/bin/env python3
"""
Run product matching and MAP violation detection from the command line.

Intended for cron or other external schedulers.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from mapwatch.ai.embedding_service import EmbeddingService, build_embedding_provider
from mapwatch.db.catalog_store import SqlCatalogStore
from mapwatch.db.match_store import SqlMatchStore
from mapwatch.db.session import AsyncSessionLocal, engine
from mapwatch.logging_config import setup_logging
from mapwatch.match.errors import MatchingError
from mapwatch.match.service import MatchingService
from mapwatch.worker.run_lock import run_lock


async def run_matching(confidence_threshold: Optional[float] = None) -> int:
    """Run one matching pass and print the summary."""
    try:
        async with AsyncSessionLocal() as db:
            service = MatchingService(
                catalog_store=SqlCatalogStore(db),
                match_store=SqlMatchStore(db),
                embedding_service=EmbeddingService(build_embedding_provider()),
                run_lock=run_lock,
            )
            try:
                summary = await service.run(confidence_threshold)
            except MatchingError as e:
                print(f"Matching failed: {e}", file=sys.stderr)
                return 1
    finally:
        await run_lock.close()
        await engine.dispose()

    print(json.dumps(summary.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Run MAP matching")
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Minimum match confidence, 0.1-1.0 (default: from settings)",
    )
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run_matching(args.threshold)))
