"""Builds the object graph of a running agent runtime."""

from dataclasses import dataclass

import httpx

from lumi.clients.rate_limit import ProviderRateLimiter, RateLimitConfig, TokenEstimator
from lumi.services.audit import ToolCallAuditor
from lumi.services.conversation import ConversationService
from lumi.services.delegation import DelegationRouter
from lumi.services.execution import ExecutionConfig, ExecutionLoop
from lumi.services.provider import CredentialSource, ProviderConfig, ProviderService
from lumi.services.screen_control import ScreenControlArbiter
from lumi.services.session_manager import (
    AgentRepository,
    ConversationRepository,
    SessionRepository,
    open_repositories,
)
from lumi.tools.builtin import builtin_tools
from lumi.tools.desktop import DesktopController, DesktopTools, ScreenCapture
from lumi.tools.registry import ToolCatalog
from lumi.utils.logging import get_logger
from lumi.utils.settings import Settings, load_settings

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Every long-lived service, constructed once and shared."""

    settings: Settings
    catalog: ToolCatalog
    auditor: ToolCallAuditor
    arbiter: ScreenControlArbiter
    provider: ProviderService
    loop: ExecutionLoop
    router: DelegationRouter
    agents: AgentRepository
    conversations: ConversationRepository
    sessions: SessionRepository
    conversation_service: ConversationService
    http_client: httpx.AsyncClient

    async def aclose(self) -> None:
        self.conversation_service.stop_agent_control()
        await self.provider.aclose()
        await self.http_client.aclose()
        logger.info("Runtime closed")


def build_runtime(
    settings: Settings | None = None,
    *,
    provider: ProviderService | None = None,
    credentials: CredentialSource | None = None,
    desktop_controller: DesktopController | None = None,
    screen_capture: ScreenCapture | None = None,
) -> Runtime:
    """Wire catalog, provider, loop, router, repositories and the conversation service.

    Args:
        settings: Runtime settings; read from the environment when omitted
        provider: Pre-built provider service, e.g. one with fake backends
        credentials: API key lookup used when the provider service is built here
        desktop_controller: Backend for the desktop-control tools
        screen_capture: Source of screenshots for agent-mode screen refreshes

    Returns:
        The assembled runtime
    """
    settings = settings or load_settings()

    http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout), follow_redirects=True)
    catalog = ToolCatalog(builtin_tools(settings.working_directory, http_client))
    for definition in DesktopTools(desktop_controller).definitions():
        catalog.register(definition)

    if provider is None:
        rate_limiter = None
        if settings.rate_limit_enabled:
            rate_limiter = ProviderRateLimiter(
                RateLimitConfig(
                    requests_per_minute=settings.requests_per_minute,
                    tokens_per_minute=settings.tokens_per_minute,
                ),
                TokenEstimator(),
            )
        provider = ProviderService(
            ProviderConfig(
                timeout=settings.http_timeout,
                stream_idle_timeout=settings.stream_idle_timeout,
                max_retries=settings.max_retries,
                retry_delay=settings.retry_delay,
                ollama_url=settings.ollama_url,
            ),
            credentials=credentials,
            rate_limiter=rate_limiter,
        )

    agents, conversations, sessions = open_repositories(settings.data_dir)
    auditor = ToolCallAuditor()
    arbiter = ScreenControlArbiter()
    loop = ExecutionLoop(
        provider,
        catalog,
        auditor,
        arbiter,
        screen_capture=screen_capture,
        config=ExecutionConfig(
            max_iterations=settings.max_iterations,
            agent_mode_max_iterations=settings.agent_mode_max_iterations,
            screen_settle_delay=settings.screen_settle_delay,
        ),
        sessions=sessions,
    )
    router = DelegationRouter(settings.delegation_depth_limit)
    conversation_service = ConversationService(agents, conversations, loop, catalog, router, arbiter)

    logger.info(f"Runtime ready with {len(catalog.names())} tools, data dir: {settings.data_dir or 'in-memory'}")
    return Runtime(
        settings=settings,
        catalog=catalog,
        auditor=auditor,
        arbiter=arbiter,
        provider=provider,
        loop=loop,
        router=router,
        agents=agents,
        conversations=conversations,
        sessions=sessions,
        conversation_service=conversation_service,
        http_client=http_client,
    )
