"""Exception taxonomy for the cache engine."""


class CacheError(Exception):
    """Base class for all engine errors; carries a human-readable message."""


class TransportError(CacheError):
    """A chunk or card-config fetch from the upstream API failed."""


class IngestionError(CacheError):
    """The transaction writing a voucher batch failed and was rolled back."""


class AggregateRebuildError(CacheError):
    """Rebuilding the derived rollup tables failed and was rolled back."""


class QueryError(CacheError):
    """A card specification could not be compiled or executed."""


class SyncInProgressError(CacheError):
    """Another download/update run is already in flight on this store."""


class EngineNotReadyError(CacheError):
    """A request arrived before the store was opened."""
