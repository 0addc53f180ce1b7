"""
Wiring for the build pipeline.

Builds every component from Settings; any collaborator can be swapped in,
which is how tests substitute a scripted agent service.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildchain.core.config import Settings
from buildchain.core.models import ModelTier
from buildchain.core.pipeline.agent_client import AgentExecutionService, HttpAgentExecutionService
from buildchain.core.pipeline.agent_resources import AgentResourceManager
from buildchain.core.pipeline.audit import SqlAuditSink
from buildchain.core.pipeline.catalogs import (
    AgentDefinitionSource,
    BundledAgentDefinitions,
    LocalizationCatalog,
    YamlLocalizationCatalog,
)
from buildchain.core.pipeline.chain_state import ChainStateStore, utcnow
from buildchain.core.pipeline.confirmation import ConfirmationGate, SqlPendingMarkerStore
from buildchain.core.pipeline.executor import PhaseExecutor
from buildchain.core.pipeline.notifications import ChannelNotifier, LogNotifier
from buildchain.core.pipeline.orchestrator import BuildOrchestrator, ClarifyHook
from buildchain.core.pipeline.retry_loops import RetryLoopController
from buildchain.core.pipeline.runner import PhaseRunner


@dataclass
class BuildPipeline:
    """The assembled pipeline, as held on `app.state.pipeline`."""
    service: AgentExecutionService
    resources: AgentResourceManager
    store: ChainStateStore
    orchestrator: BuildOrchestrator
    gate: ConfirmationGate
    catalog: LocalizationCatalog

    async def aclose(self) -> None:
        await self.orchestrator.shutdown()
        close = getattr(self.service, "close", None)
        if close is not None:
            await close()


def create_pipeline(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    service: Optional[AgentExecutionService] = None,
    definitions: Optional[AgentDefinitionSource] = None,
    notifier: Optional[ChannelNotifier] = None,
    catalog: Optional[LocalizationCatalog] = None,
    clarify: Optional[ClarifyHook] = None,
    clock: Callable[[], datetime] = utcnow,
) -> BuildPipeline:
    """Assemble the pipeline from settings and optional overrides."""
    service = service or HttpAgentExecutionService(
        base_url=settings.AGENT_SERVICE_URL,
        api_key=settings.AGENT_SERVICE_API_KEY,
        timeout=settings.AGENT_SERVICE_TIMEOUT_SECONDS,
    )
    definitions = definitions or BundledAgentDefinitions(settings.AGENT_DEFINITIONS_DIR)
    catalog = catalog or YamlLocalizationCatalog.bundled(settings.DEFAULT_LOCALE)
    notifier = notifier or LogNotifier()

    resources = AgentResourceManager(settings.WORKSPACE_DIR, definitions)
    executor = PhaseExecutor(
        resources,
        service,
        models={
            ModelTier.FAST: settings.MODEL_FAST,
            ModelTier.COMPLEX: settings.MODEL_COMPLEX,
        },
        max_attempts=settings.PHASE_MAX_ATTEMPTS,
        backoff_seconds=settings.PHASE_RETRY_BACKOFF_SECONDS,
        default_max_turns=settings.DEFAULT_MAX_TURNS,
    )
    store = ChainStateStore(session_factory)
    runner = PhaseRunner(
        executor,
        store,
        catalog=catalog,
        notifier=notifier,
        audit=SqlAuditSink(session_factory),
    )
    orchestrator = BuildOrchestrator(
        session_factory,
        runner,
        RetryLoopController(runner),
        store,
        catalog,
        workspace_dir=settings.WORKSPACE_DIR,
        clarify=clarify,
    )
    gate = ConfirmationGate(
        session_factory,
        SqlPendingMarkerStore(
            session_factory,
            ttl=timedelta(minutes=settings.CONFIRMATION_TTL_MINUTES),
            clock=clock,
        ),
        catalog,
        orchestrator,
        store,
        ttl_minutes=settings.CONFIRMATION_TTL_MINUTES,
    )

    return BuildPipeline(
        service=service,
        resources=resources,
        store=store,
        orchestrator=orchestrator,
        gate=gate,
        catalog=catalog,
    )
