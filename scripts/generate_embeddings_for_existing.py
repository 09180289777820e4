"""Backfill embeddings for existing products."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from mapwatch.ai.embedding_service import EmbeddingService, build_embedding_provider
from mapwatch.db.catalog_store import SqlCatalogStore
from mapwatch.db.match_store import SqlMatchStore
from mapwatch.db.session import AsyncSessionLocal
from mapwatch.match.service import MatchingService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def generate_embeddings_for_existing(
    batch_size: int = 50,
    source: Optional[str] = None,
    limit: Optional[int] = None,
    dry_run: bool = False,
):
    """
    Generate and store embeddings for products missing them.

    Args:
        batch_size: Number of products to process in each batch
        source: Optional source filter (e.g. 'idc', 'kitchen_barista')
        limit: Optional limit on total number of products to process
        dry_run: Only report what would be processed
    """
    provider = build_embedding_provider()
    if provider is None and not dry_run:
        logger.warning("No embedding provider configured. Skipping embedding generation.")
        return

    embedding_service = EmbeddingService(provider)
    logger.info("Starting embedding generation for existing products...")

    processed = 0
    failed = 0
    batch_num = 0

    async with AsyncSessionLocal() as db:
        service = MatchingService(
            catalog_store=SqlCatalogStore(db),
            match_store=SqlMatchStore(db),
            embedding_service=embedding_service,
        )

        if dry_run:
            result = await service.backfill_embeddings(source=source, limit=limit or batch_size, dry_run=True)
            logger.info(f"Dry run: {result['products_found']} products need embeddings")
            for product in result["products"]:
                logger.info(f"  [{product['source']}] {product['id']}: {product['title']}")
            return

        while limit is None or processed + failed < limit:
            size = batch_size if limit is None else min(batch_size, limit - processed - failed)
            batch_num += 1
            result = await service.backfill_embeddings(source=source, limit=size)
            if result["products_found"] == 0:
                break

            processed += result["success"]
            failed += result["failed"]
            logger.info(f"Batch {batch_num}: {result['success']} succeeded, {result['failed']} failed")
            for error in result["errors"]:
                logger.warning(error)

            # Products that keep failing stay in the candidate set
            if result["success"] == 0:
                logger.error("No progress in this batch, stopping")
                break

    logger.info(f"Embedding generation complete: {processed} processed, {failed} failed")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Generate embeddings for existing products")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=50,
        help="Number of products to process per batch (default: 50)",
    )
    parser.add_argument(
        "--source",
        default=None,
        help="Only process products from this source (default: all)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Limit number of products to process (default: all)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List products that need embeddings without generating them",
    )

    args = parser.parse_args()

    asyncio.run(generate_embeddings_for_existing(
        batch_size=args.batch_size,
        source=args.source,
        limit=args.limit,
        dry_run=args.dry_run,
    ))
