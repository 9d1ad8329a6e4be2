"""Application context: every long-lived collaborator, built once at startup."""

from dataclasses import dataclass
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from deals_assistant.clients.supabase_client import SupabaseClient
from deals_assistant.config import Settings, get_settings
from deals_assistant.services.cache_service import CacheService
from deals_assistant.services.chat_logger import ChatLogger
from deals_assistant.services.classifier_service import IntentClassifier
from deals_assistant.services.conversation_service import ConversationService
from deals_assistant.services.llm_service import LLMGateway
from deals_assistant.services.orchestrator_service import ChatOrchestrator
from deals_assistant.services.tool_service import ToolService
from deals_assistant.utils.logging import get_logger

logger = get_logger("context")


@dataclass
class AppContext:
    settings: Settings
    cache: CacheService
    gateway: LLMGateway
    classifier: IntentClassifier
    tools: ToolService
    orchestrator: ChatOrchestrator
    conversations: ConversationService
    chat_logger: ChatLogger
    supabase: SupabaseClient
    redis: Optional[Redis] = None

    async def aclose(self) -> None:
        await self.supabase.aclose()
        if self.redis is not None:
            await self.redis.aclose()


async def connect_redis(settings: Settings) -> Optional[Redis]:
    """Open and ping the KV store. ``None`` means run on the in-memory tier."""
    if not settings.redis.url:
        logger.info("REDIS_URL not set - cache and rate limits use the in-memory tier")
        return None

    client = Redis.from_url(
        settings.redis.url,
        password=settings.redis.password,
        decode_responses=True,
        socket_timeout=settings.redis.socket_timeout,
        socket_connect_timeout=settings.redis.socket_connect_timeout,
        max_connections=settings.redis.max_connections,
    )
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.error(f"Failed to connect to Redis: {e}", exc_info=True)
        await client.aclose()
        if settings.is_production:
            raise
        logger.warning("Continuing with the in-memory cache tier")
        return None

    logger.info("Redis connection initialized successfully")
    return client


def build_app_context(
    settings: Optional[Settings] = None,
    redis_client: Optional[Redis] = None,
    supabase: Optional[SupabaseClient] = None,
    gateway: Optional[LLMGateway] = None,
) -> AppContext:
    """Wire the service graph. Each component gets its collaborators through its constructor."""
    settings = settings or get_settings()
    supabase = supabase or SupabaseClient(settings)
    cache = CacheService(settings, redis_client=redis_client)
    gateway = gateway or LLMGateway(settings)
    classifier = IntentClassifier(gateway, settings)
    tools = ToolService(supabase, cache=cache, settings=settings)
    orchestrator = ChatOrchestrator(cache, gateway, classifier, tools, settings=settings)

    return AppContext(
        settings=settings,
        cache=cache,
        gateway=gateway,
        classifier=classifier,
        tools=tools,
        orchestrator=orchestrator,
        conversations=ConversationService(supabase, settings),
        chat_logger=ChatLogger(settings),
        supabase=supabase,
        redis=redis_client,
    )
