"""Re-run listing creation for candidates left approved by a failed import."""

import argparse
import json
import logging

from places_pipeline.core.wiring import build_pipeline

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = argparse.ArgumentParser(description="Retry imports for approved candidates")
    parser.add_argument("--limit", type=int, help="Stop after this many candidates")
    args = parser.parse_args(argv)

    pipeline = build_pipeline()
    results = pipeline.importer.retry_approved(limit=args.limit)
    logger.info("Retried imports: %d imported, %d failed", len(results["imported"]), len(results["failed"]))
    print(json.dumps(results, indent=2))
    return 1 if results["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
