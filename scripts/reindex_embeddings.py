#!/usr/bin/env python3
"""Vector index maintenance script for ChatMimic Vector Store.

Ensures the pgvector extension and the IVFFlat cosine index exist, and
optionally rebuilds the index with ``REINDEX INDEX CONCURRENTLY`` so reads
keep working during the rebuild.

This is an offline maintenance script, NOT part of the request path.
Run it after bulk ingests, when the lists parameter changes, or when the
index is suspected to be degraded.

Usage:
    cd /path/to/chatmimic-vector-store
    python3 scripts/reindex_embeddings.py              # 重建索引
    python3 scripts/reindex_embeddings.py --ensure-only  # 仅确保索引存在
    python3 scripts/reindex_embeddings.py --lists 200
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from apps.embedding.index import ensure_extension, ensure_vector_index, rebuild_vector_index
from core.database import close_db, get_engine
from settings import settings

logger = logging.getLogger(__name__)


async def reindex(ensure_only: bool = False, lists: int | None = None) -> dict:
    """Ensure and (optionally) rebuild the vector index.

    Returns:
        dict: ``created`` and ``rebuilt`` flags.
    """
    engine = get_engine()
    stats = {"created": False, "rebuilt": False}
    try:
        async with engine.begin() as conn:
            await ensure_extension(conn)
        stats["created"] = await ensure_vector_index(
            engine, lists=lists or settings.index_ivfflat_lists,
        )
        if not ensure_only:
            stats["rebuilt"] = await rebuild_vector_index(engine)
    finally:
        await close_db()
    return stats


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(
        description="确保并重建 user_embeddings 向量索引",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  python3 scripts/reindex_embeddings.py                 # 重建索引
  python3 scripts/reindex_embeddings.py --ensure-only   # 仅确保索引存在
  python3 scripts/reindex_embeddings.py --lists 200     # 自定义 IVF 列表数
""",
    )
    parser.add_argument(
        "--ensure-only",
        action="store_true",
        help="仅创建缺失的索引，不执行重建",
    )
    parser.add_argument(
        "--lists",
        type=int,
        default=None,
        help=f"IVFFlat 列表数 (默认: {settings.index_ivfflat_lists})，仅在索引不存在时生效",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="显示详细输出",
    )
    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        stats = asyncio.run(reindex(ensure_only=args.ensure_only, lists=args.lists))
    except Exception as e:
        logger.exception(f"Reindex failed: {e}")
        sys.exit(1)

    print()
    print(f"索引已确认: {'是' if stats['created'] else '否（非 PostgreSQL）'}")
    print(f"索引已重建: {'是' if stats['rebuilt'] else '否'}")
    sys.exit(0)


if __name__ == "__main__":
    main()
