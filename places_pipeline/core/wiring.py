"""Assemble the pipeline services from settings."""

import logging
from dataclasses import dataclass
from typing import Optional

from places_pipeline.core.candidates import CandidateRepository
from places_pipeline.core.config import Settings, get_settings
from places_pipeline.core.dedup import DeduplicationEngine
from places_pipeline.core.importer import ImportExecutor
from places_pipeline.core.ingestion import PlaceDirectory, PlaceIngestionClient
from places_pipeline.core.normalization import VenueNormalizer
from places_pipeline.core.orchestrator import SyncLimits, SyncOrchestrator
from places_pipeline.gateways.listings import HttpListingGateway, InMemoryListingGateway, ListingGateway
from places_pipeline.storage.base import CandidateStore, RawPlaceStore, SyncJobStore
from places_pipeline.storage.memory import InMemoryCandidateStore, InMemoryRawPlaceStore, InMemorySyncJobStore
from places_pipeline.vendors.google_places import GooglePlacesDirectory
from places_pipeline.vendors.serpapi_maps import SerpApiMapsDirectory

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    settings: Settings
    raw_places: RawPlaceStore
    candidates: CandidateRepository
    orchestrator: SyncOrchestrator
    importer: ImportExecutor
    engine: DeduplicationEngine
    listings: ListingGateway


def build_directory(settings: Settings) -> PlaceDirectory:
    if settings.directory_backend == "serpapi":
        return SerpApiMapsDirectory(
            api_key=settings.serpapi_api_key,
            request_cost=settings.text_search_cost,
            language_code=settings.language_code,
            timeout=settings.page_timeout_seconds,
        )
    return GooglePlacesDirectory(
        api_key=settings.google_api_key,
        request_cost=settings.text_search_cost,
        page_size=settings.page_size,
        language_code=settings.language_code,
        timeout=settings.page_timeout_seconds,
    )


def build_stores(settings: Settings):
    """Return ``(raw_places, candidates, jobs)`` stores for the configured backend."""
    if settings.database_url:
        from places_pipeline.storage.postgres import (
            PostgresCandidateStore,
            PostgresRawPlaceStore,
            PostgresSyncJobStore,
            create_schema,
        )

        create_schema()
        logger.info("Using PostgreSQL stores")
        return PostgresRawPlaceStore(), PostgresCandidateStore(), PostgresSyncJobStore()
    logger.info("Using in-memory stores")
    return InMemoryRawPlaceStore(), InMemoryCandidateStore(), InMemorySyncJobStore()


def build_listing_gateway(settings: Settings) -> ListingGateway:
    if settings.listing_api_url:
        return HttpListingGateway(
            settings.listing_api_url,
            token=settings.listing_api_token,
            timeout=settings.page_timeout_seconds,
        )
    return InMemoryListingGateway()


def build_pipeline(
    settings: Optional[Settings] = None,
    directory: Optional[PlaceDirectory] = None,
    stores: Optional[tuple] = None,
    listings: Optional[ListingGateway] = None,
    normalizer: Optional[VenueNormalizer] = None,
    recover_orphans: bool = False,
) -> Pipeline:
    """Wire every service; collaborators can be overridden for tests and scripts.

    ``recover_orphans`` fails jobs a previous server left processing. Only the
    long-running server passes it; CLI runs and scripts share the store with it.
    """
    settings = settings or get_settings()
    raw_store, candidate_store, job_store = stores or build_stores(settings)
    listings = listings or build_listing_gateway(settings)

    candidates = CandidateRepository(candidate_store)
    engine = DeduplicationEngine(
        threshold=settings.duplicate_threshold,
        radius_m=settings.proximity_radius_m,
    )
    ingestion = PlaceIngestionClient(
        directory or build_directory(settings),
        max_retries=settings.max_retries,
        backoff_seconds=settings.backoff_seconds,
    )
    orchestrator = SyncOrchestrator(
        ingestion=ingestion,
        engine=engine,
        candidates=candidates,
        raw_places=raw_store,
        jobs=job_store,
        listings=listings,
        normalizer=normalizer,
        limits=SyncLimits(
            max_places=settings.max_places_per_sync,
            max_requests=settings.max_requests_per_sync,
            max_cost=settings.max_cost_per_sync,
            alert_cost=settings.alert_cost,
            max_photos_per_place=settings.max_photos_per_place,
        ),
        max_workers=settings.sync_workers,
    )
    importer = ImportExecutor(
        candidates=candidates,
        raw_places=raw_store,
        listings=listings,
        max_photos=settings.max_photos_per_place,
    )
    if recover_orphans:
        recovered = orchestrator.recover_orphaned_jobs()
        if recovered:
            logger.warning("Recovered %d orphaned sync job(s)", recovered)
    return Pipeline(
        settings=settings,
        raw_places=raw_store,
        candidates=candidates,
        orchestrator=orchestrator,
        importer=importer,
        engine=engine,
        listings=listings,
    )
