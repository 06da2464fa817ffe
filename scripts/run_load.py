"""
Script to load one batch from the SQL staging area

Usage:
    python scripts/run_load.py --source orders \
        --start 2024-01-01T00:00:00 --end 2024-01-02T00:00:00 \
        --entity-spec specs/orders.json
"""

import argparse
import asyncio
import json
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import build_engine, build_session_maker
from core.exceptions import BatchLoadError, ConfigurationError
from core.logging import setup_logging
from load_engine.entity_config import load_entity_spec
from load_engine.runner import run_batch
from load_engine.staging import SqlStagingSource
from schemas.batch import BatchDescriptor

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one checkpointed batch load")
    parser.add_argument("--source", required=True, help="Source identifier of the staged records")
    parser.add_argument("--start", required=True, help="Watermark start (ISO-8601, inclusive)")
    parser.add_argument("--end", required=True, help="Watermark end (ISO-8601, exclusive)")
    parser.add_argument("--entity-spec", required=True, help="Path to the entity spec JSON file")
    parser.add_argument("--attempt", type=int, default=1, help="Attempt number (default: 1)")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    return parser.parse_args(argv)


async def run_load(args: argparse.Namespace) -> int:
    """Run the batch; returns the process exit code"""
    try:
        entity_spec = load_entity_spec(args.entity_spec)
        descriptor = BatchDescriptor(
            source_id=args.source,
            watermark_start=args.start,
            watermark_end=args.end,
            attempt=args.attempt,
        )
    except (ConfigurationError, ValueError) as e:
        logger.error(f"Invalid load request: {e}")
        return 2

    engine = build_engine(args.database_url or settings.DATABASE_URL)
    session_maker = build_session_maker(engine)

    try:
        async with session_maker() as session:
            report = await run_batch(session, entity_spec, SqlStagingSource(session), descriptor)
    except BatchLoadError as e:
        report = e.report
        logger.error(f"Batch load failed: {e.message}")
        if report is not None:
            print(report.model_dump_json(indent=2))
        return 1
    finally:
        await engine.dispose()

    print(json.dumps(report.model_dump(mode="json"), indent=2))
    return 0


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_load(parse_args())))
