from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from research_assistant.config import Settings
from research_assistant.models.research import ProviderKind
from research_assistant.research.finalize import FinalizationPipeline
from research_assistant.research.refinement import RefinementClient, RefinementService
from research_assistant.research.retry import RetryPolicy
from research_assistant.research.scheduler import ProviderRunScheduler
from research_assistant.services.email.transport import DemoTransport, SendGridTransport
from research_assistant.services.logger import logger
from research_assistant.services.providers.base import ProviderClient
from research_assistant.services.providers.demo import DemoProviderClient, DemoRefinementClient
from research_assistant.services.providers.gemini import GeminiClient
from research_assistant.services.providers.normalizers import (
    normalize_gemini_result,
    normalize_openai_result,
)
from research_assistant.services.providers.openai_deep_research import OpenAIDeepResearchClient
from research_assistant.services.report.builder import build_report_pdf
from research_assistant.services.report.storage import SupabaseArtifactStore
from research_assistant.services.repository import (
    InMemoryResearchRepository,
    PostgresResearchRepository,
    ResearchRepository,
)

NORMALIZERS = {
    ProviderKind.OPENAI: normalize_openai_result,
    ProviderKind.GEMINI: normalize_gemini_result,
}


@dataclass
class Container:
    settings: Settings
    repository: ResearchRepository
    refinement: RefinementService
    scheduler: ProviderRunScheduler
    finalizer: FinalizationPipeline
    closeables: list[Any] = field(default_factory=list)

    async def startup(self) -> None:
        if isinstance(self.repository, PostgresResearchRepository):
            await self.repository.ensure_schema()

    async def shutdown(self) -> None:
        await self.scheduler.wait_idle()
        for resource in self.closeables:
            await resource.aclose()
        if isinstance(self.repository, PostgresResearchRepository):
            await self.repository.close()


def build_policies(settings: Settings) -> dict[ProviderKind, RetryPolicy]:
    return {
        ProviderKind.OPENAI: RetryPolicy(
            max_attempts=settings.openai_max_attempts,
            initial_delay_ms=settings.openai_initial_delay_ms,
        ),
        ProviderKind.GEMINI: RetryPolicy(
            max_attempts=settings.gemini_max_attempts,
            initial_delay_ms=settings.gemini_initial_delay_ms,
        ),
    }


def build_container(settings: Settings) -> Container:
    """Construct every collaborator once from settings."""
    if settings.database_url:
        repository: ResearchRepository = PostgresResearchRepository(settings.database_url)
    else:
        logger.info("DATABASE_URL not set; using the in-memory research repository")
        repository = InMemoryResearchRepository()

    closeables: list[Any] = []
    if settings.demo_mode:
        logger.info("Demo mode enabled: providers and email are simulated")
        refinement_client: RefinementClient = DemoRefinementClient()
        clients: dict[ProviderKind, ProviderClient] = {
            ProviderKind.OPENAI: DemoProviderClient("openai"),
            ProviderKind.GEMINI: DemoProviderClient("gemini"),
        }
        transport = DemoTransport()
    else:
        openai_client = OpenAIDeepResearchClient(
            api_key=settings.openai_api_key,
            base_url=settings.openai_dr_base_url,
            model=settings.openai_dr_model,
            timeout=settings.provider_timeout_seconds,
            poll_max_attempts=settings.openai_poll_max_attempts,
            poll_initial_delay_ms=settings.openai_poll_initial_delay_ms,
        )
        gemini_client = GeminiClient(
            api_key=settings.gemini_api_key,
            base_url=settings.gemini_base_url,
            model=settings.gemini_model,
            timeout=settings.provider_timeout_seconds,
            poll_max_attempts=settings.gemini_poll_max_attempts,
            poll_initial_delay_ms=settings.gemini_poll_initial_delay_ms,
        )
        transport = SendGridTransport(
            api_key=settings.sendgrid_api_key,
            from_email=settings.email_from,
            base_url=settings.sendgrid_base_url,
            policy=RetryPolicy(
                max_attempts=settings.email_max_attempts,
                initial_delay_ms=settings.email_initial_delay_ms,
            ),
        )
        refinement_client = openai_client
        clients = {ProviderKind.OPENAI: openai_client, ProviderKind.GEMINI: gemini_client}
        closeables = [openai_client, gemini_client, transport]

    store = SupabaseArtifactStore(
        bucket=settings.report_storage_bucket,
        supabase_url=settings.supabase_url,
        service_key=settings.supabase_service_key,
    )
    finalizer = FinalizationPipeline(repository, build_report_pdf, store, transport, settings)
    scheduler = ProviderRunScheduler(
        repository,
        clients,
        NORMALIZERS,
        build_policies(settings),
        finalizer=finalizer,
    )
    return Container(
        settings=settings,
        repository=repository,
        refinement=RefinementService(repository, refinement_client),
        scheduler=scheduler,
        finalizer=finalizer,
        closeables=closeables,
    )
