"""Composition root for Intake-Gateway.

Builds the storage adapter and the intake pipeline from configuration. The
HTTP API and the CLI both obtain their objects from here.

Architecture:
    - Follows Hexagonal Architecture principles
    - Storage adapter is selected via the configuration manager
    - Collaborators default to the reference adapters and can be replaced by
      passing instances to build_pipeline()
"""

import logging
from typing import Dict, Optional

from intake_gateway.adapters.collaborators import (
    ConfiguredAffiliateEngine,
    DraftNoteGenerator,
    FileDeadLetterQueue,
    LocalObjectStore,
    LoggingNotifier,
    ReportLabIntakeRenderer,
)
from intake_gateway.adapters.normalizers import get_normalizer
from intake_gateway.adapters.storage import DuckDBAdapter, InMemoryStorageAdapter
from intake_gateway.domain.guardrails import RetryPolicy
from intake_gateway.domain.models import SourceConfig
from intake_gateway.domain.ports import (
    AffiliateEnginePort,
    DeadLetterPort,
    DocumentRendererPort,
    NotifierPort,
    ObjectStorePort,
    PHICipherPort,
    StoragePort,
)
from intake_gateway.domain.services import (
    DeadLetterHandler,
    IdempotencyGuard,
    IntakePipeline,
    PatientIdentityResolver,
    ReferralAttributor,
    SubmissionOrchestrator,
    TenantResolver,
    WebhookAuthenticator,
)
from intake_gateway.infrastructure.config_manager import DatabaseConfig, get_database_config
from intake_gateway.infrastructure.encryption import EncryptionService
from intake_gateway.infrastructure.settings import Settings, settings

logger = logging.getLogger(__name__)


def create_storage_adapter(db_config: Optional[DatabaseConfig] = None) -> StoragePort:
    """Create storage adapter based on configuration.

    Returns:
        StoragePort: Configured storage adapter instance

    Raises:
        ValueError: If database type is unsupported
    """
    db_config = db_config or get_database_config()

    if db_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB adapter with path: {db_config.db_path or ':memory:'}")
        return DuckDBAdapter(db_config=db_config)
    elif db_config.db_type == "memory":
        logger.info("Initializing in-memory storage adapter")
        return InMemoryStorageAdapter()
    else:
        raise ValueError(f"Unsupported database type: {db_config.db_type}")


def create_affiliate_engine(app_settings: Settings) -> ConfiguredAffiliateEngine:
    if app_settings.affiliates_file:
        return ConfiguredAffiliateEngine.from_file(app_settings.affiliates_file)
    return ConfiguredAffiliateEngine()


def build_pipeline(
    storage: StoragePort,
    cipher: Optional[PHICipherPort] = None,
    sources: Optional[Dict[str, SourceConfig]] = None,
    app_settings: Optional[Settings] = None,
    dead_letter_queue: Optional[DeadLetterPort] = None,
    renderer: Optional[DocumentRendererPort] = None,
    object_store: Optional[ObjectStorePort] = None,
    affiliate_engine: Optional[AffiliateEnginePort] = None,
    notifier: Optional[NotifierPort] = None,
    retry_policy: Optional[RetryPolicy] = None
) -> IntakePipeline:
    """Wire the intake pipeline.

    Parameters:
        storage: Storage adapter (all repository ports)
        cipher: PHI cipher (defaults to EncryptionService from the environment)
        sources: Source bindings (defaults to the configured sources)
        app_settings: Settings (defaults to the global settings)
        dead_letter_queue: Dead-letter writer (defaults to the JSON-lines file)
        renderer: Document renderer (defaults to the ReportLab renderer)
        object_store: Artifact store (defaults to a local store when
            IG_OBJECT_STORE_DIR is set, else artifacts are not uploaded)
        affiliate_engine: Affiliate engine (defaults to the configured engine)
        notifier: Notifier (defaults to the logging notifier)
        retry_policy: Backoff for tenant lookups and patient upserts

    Returns:
        IntakePipeline: Ready-to-use pipeline
    """
    app_settings = app_settings or settings
    cipher = cipher or EncryptionService()
    sources = sources if sources is not None else app_settings.sources
    retry_policy = retry_policy or RetryPolicy(
        max_attempts=app_settings.retry_attempts,
        base_delay=app_settings.retry_delay_ms / 1000.0
    )

    if object_store is None and app_settings.object_store_dir:
        object_store = LocalObjectStore(app_settings.object_store_dir)
    if dead_letter_queue is None and app_settings.dead_letter_path:
        dead_letter_queue = FileDeadLetterQueue(app_settings.dead_letter_path)

    authenticator = WebhookAuthenticator(cipher)
    resolver = PatientIdentityResolver(
        storage,
        cipher,
        window=app_settings.dedup_window,
        create_max_attempts=app_settings.create_max_attempts,
        conflict_backoff=RetryPolicy(
            max_attempts=app_settings.create_max_attempts,
            base_delay=app_settings.create_delay_ms / 1000.0,
            jitter=app_settings.create_delay_ms / 2000.0
        )
    )
    orchestrator = SubmissionOrchestrator(
        resolver=resolver,
        documents=storage,
        retry_policy=retry_policy,
        renderer=renderer or ReportLabIntakeRenderer(),
        object_store=object_store,
        note_generator=DraftNoteGenerator(storage),
        attributor=ReferralAttributor(affiliate_engine or create_affiliate_engine(app_settings), storage),
        audit=storage,
        notifier=notifier or LoggingNotifier(),
        notify_workers=app_settings.notify_workers
    )

    logger.info(f"Intake pipeline ready for sources: {', '.join(sorted(sources)) or '(none)'}")
    return IntakePipeline(
        sources=sources,
        authenticator=authenticator,
        tenant_resolver=TenantResolver(storage, authenticator, retry_policy),
        idempotency=IdempotencyGuard(storage),
        orchestrator=orchestrator,
        dead_letters=DeadLetterHandler(dead_letter_queue),
        unmatched=storage,
        normalizer_factory=get_normalizer
    )
