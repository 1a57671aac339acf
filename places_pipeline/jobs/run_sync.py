"""CLI job that runs one sync to completion and prints a summary."""

import argparse
import json
import logging
from typing import List, Optional

from places_pipeline.core.config import ConfigError, get_settings
from places_pipeline.core.wiring import build_pipeline
from places_pipeline.errors import AlreadyRunning
from places_pipeline.models import Scope, SyncStatus, SyncType

logger = logging.getLogger(__name__)


def run_sync_job(
    *,
    query: str,
    category: Optional[str] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius_m: Optional[float] = None,
    sync_type: str = SyncType.INCREMENTAL.value,
    max_places: Optional[int] = None,
    triggered_by: str = "cron",
    pipeline=None,
) -> dict:
    """Trigger a sync, block until it finishes and return the job summary."""
    settings = get_settings()
    if pipeline is None:
        settings.require_directory_key()
        pipeline = build_pipeline(settings)

    scope = Scope(
        query=query,
        category=category,
        latitude=latitude,
        longitude=longitude,
        radius_m=radius_m,
    )
    logger.info("Running %s sync for scope=%s", sync_type, scope.key)
    job_id = pipeline.orchestrator.trigger(
        scope,
        max_places=max_places,
        sync_type=SyncType(sync_type),
        triggered_by=triggered_by,
    )
    job = pipeline.orchestrator.wait(job_id)
    logger.info("Completed run: status=%s places_found=%d", job.status.value, job.places_found)
    return job.to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a places directory sync")
    parser.add_argument("--query", dest="query", required=True, help="Text query, e.g. 'camping Chiang Mai'")
    parser.add_argument("--category", dest="category", help="Directory category/type filter")
    parser.add_argument("--lat", dest="latitude", type=float, help="Scope centre latitude")
    parser.add_argument("--lng", dest="longitude", type=float, help="Scope centre longitude")
    parser.add_argument("--radius", dest="radius_m", type=float, help="Scope radius in metres")
    parser.add_argument(
        "--sync-type",
        dest="sync_type",
        choices=[SyncType.FULL.value, SyncType.INCREMENTAL.value],
        default=SyncType.INCREMENTAL.value,
        help="full re-scores every venue; incremental only scores new ones",
    )
    parser.add_argument("--max-places", dest="max_places", type=int, help="Stop after this many places")
    parser.add_argument("--triggered-by", dest="triggered_by", default="cron", help="Recorded on the job")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)

    if (args.latitude is None) != (args.longitude is None):
        parser.error("--lat and --lng must be given together")

    try:
        summary = run_sync_job(
            query=args.query,
            category=args.category,
            latitude=args.latitude,
            longitude=args.longitude,
            radius_m=args.radius_m,
            sync_type=args.sync_type,
            max_places=args.max_places,
            triggered_by=args.triggered_by,
        )
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except AlreadyRunning as exc:
        logger.error("%s", exc)
        return 1

    print(json.dumps(summary, indent=2, ensure_ascii=False))
    return 1 if summary["status"] == SyncStatus.FAILED.value else 0


if __name__ == "__main__":
    raise SystemExit(main())
