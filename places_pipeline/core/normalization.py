"""Optional pre-processing of raw venues before they are scored."""

from typing import Protocol

from places_pipeline.models import RawPlace


class VenueNormalizer(Protocol):
    def normalize(self, raw_place: RawPlace) -> RawPlace:
        ...


class PassThroughNormalizer:
    """Default normalizer: raw fields are scored as-is."""

    def normalize(self, raw_place: RawPlace) -> RawPlace:
        return raw_place
