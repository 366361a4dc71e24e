from typing import Optional


class HotspotError(Exception):
    """Base class for domain errors raised by the hotspot core."""


class ValidationError(HotspotError):
    """Bad incident type, missing coordinates or malformed input."""


class NotFound(HotspotError):
    pass


class SelfVote(HotspotError):
    pass


class DuplicateVote(HotspotError):
    pass


class ClusteringCycleSkipped(HotspotError):
    """A clustering tick found a previous cycle still running."""


class SpatialStoreUnavailable(HotspotError):
    """The spatial store failed during a clustering cycle."""


class PushGatewayError(HotspotError):
    def __init__(self, message: str, token: Optional[str] = None):
        super().__init__(message)
        self.token = token
