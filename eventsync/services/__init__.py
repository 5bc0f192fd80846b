# Services package
from .normalizer import PayloadNormalizer, NormalizedEvent, lookup
from .entity_resolver import EntityResolver, Lookup, OrganizationHints, organization_hints
from .persistence import EntityStore
from .gift_card_ledger import GiftCardLedger, LedgerResult, BalanceDrift
from .deferred_linker import DeferredLinker, LinkResult
from .retry_queue import RetryQueue
from .upstream_client import UpstreamClient
from .webhook_processor import IngestionPipeline, IngestResult, compute_payload_hash
from .job_runner import JobRunner, DrainSummary
from .scheduler import DrainScheduler
from .backfill import BackfillOrchestrator, BackfillReport

__all__ = [
    "PayloadNormalizer", "NormalizedEvent", "lookup",
    "EntityResolver", "Lookup", "OrganizationHints", "organization_hints",
    "EntityStore",
    "GiftCardLedger", "LedgerResult", "BalanceDrift",
    "DeferredLinker", "LinkResult",
    "RetryQueue",
    "UpstreamClient",
    "IngestionPipeline", "IngestResult", "compute_payload_hash",
    "JobRunner", "DrainSummary",
    "DrainScheduler",
    "BackfillOrchestrator", "BackfillReport",
]
