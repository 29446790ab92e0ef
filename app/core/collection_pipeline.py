"""
Per-run processing: deduplicate, persist, classify, route.

Live records go through the store first; only records this run actually
inserted are classified and routed. Cached fallback records are already
stored and are only counted.
"""
import logging
from dataclasses import asdict, dataclass

from app.core.alert_router import AlertRouter, QueryVariant
from app.core.observation_store import ObservationStore
from app.core.resilience import FetchOutcome, FetchStatus
from app.core.risk_classifier import classify

logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    """Running counts for one collection run."""

    fetched: int = 0
    new: int = 0
    duplicate: int = 0
    published: int = 0
    cached: int = 0
    live_scopes: int = 0
    fallback_scopes: int = 0
    empty_scopes: int = 0
    routing_failures: int = 0
    failed_scopes: int = 0

    @property
    def degraded_scopes(self) -> int:
        return self.fallback_scopes + self.empty_scopes + self.failed_scopes

    def to_dict(self):
        return asdict(self)


class CollectionPipeline:
    """Store → classify → route for the outcomes of one run."""

    def __init__(self, store: ObservationStore, router: AlertRouter):
        self.store = store
        self.router = router

    def process(
        self,
        outcome: FetchOutcome,
        stats: PipelineStats,
        variant: QueryVariant = QueryVariant.RECENT,
    ) -> PipelineStats:
        if outcome.status == FetchStatus.FALLBACK:
            stats.fallback_scopes += 1
            stats.cached += len(outcome.records)
            return stats
        if outcome.status == FetchStatus.EMPTY:
            stats.empty_scopes += 1
            return stats

        stats.live_scopes += 1
        for record in outcome.records:
            stats.fetched += 1

            if self.store.exists(record.domain, record.natural_key):
                stats.duplicate += 1
                logger.debug(f"Discarding duplicate {record.domain.value}/{record.natural_key}")
                continue

            stored, created = self.store.save_if_absent(record)
            if not created:
                stats.duplicate += 1
                continue
            stats.new += 1

            try:
                routes = self.router.dispatch(stored, classify(stored), variant)
            except Exception as e:
                stats.routing_failures += 1
                logger.error(
                    f"Routing failed for {stored.domain.value}/{stored.natural_key}: {e}",
                    exc_info=True,
                )
                continue
            stats.published += len(routes)

        return stats
