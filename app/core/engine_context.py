"""Process-wide engine context.

Built once at startup and passed explicitly to the engine, editor and
gateway; there are no module-level runtime singletons.
"""

from dataclasses import dataclass

import redis.asyncio as aioredis

from app.core.broadcast import BroadcastBus, LocalBroadcastBackend, RedisBroadcastBackend
from app.core.cache import Cache, InMemoryCacheBackend, RedisCacheBackend, connect_redis
from app.core.config import Settings, get_settings
from app.core.entity_extraction import EntityExtractor
from app.core.generation_engine import GenerationEngine
from app.core.live_sync import LiveSyncGateway
from app.core.llm import ProviderRouter
from app.core.logging import get_logger
from app.core.runs import RunRegistry
from app.core.section_editor import SectionEditor
from app.db.content_store import ContentStore
from app.db.memory_store import InMemoryContentStore

logger = get_logger(__name__)


def build_store(settings: Settings) -> ContentStore:
    """
    Create the configured content store backend.

    Raises:
        ValueError: If CONTENT_STORE_BACKEND is not recognized
    """
    backend = settings.CONTENT_STORE_BACKEND
    if backend == "memory":
        return InMemoryContentStore()
    if backend == "supabase":
        from app.db.supabase_client import get_supabase
        from app.db.supabase_store import SupabaseContentStore

        return SupabaseContentStore(get_supabase())
    raise ValueError(f"Unknown CONTENT_STORE_BACKEND '{backend}'")


@dataclass
class EngineContext:
    settings: Settings
    store: ContentStore
    cache: Cache
    bus: BroadcastBus
    providers: ProviderRouter
    runs: RunRegistry
    engine: GenerationEngine
    editor: SectionEditor
    gateway: LiveSyncGateway
    redis: aioredis.Redis | None = None

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        *,
        store: ContentStore | None = None,
        providers: ProviderRouter | None = None,
        redis_client: aioredis.Redis | None = None,
    ) -> "EngineContext":
        """Wire every collaborator. In-process backends are used when no Redis client is given."""
        settings = settings or get_settings()
        store = store or build_store(settings)
        providers = providers or ProviderRouter.from_settings(settings)

        if redis_client is not None:
            cache = Cache(RedisCacheBackend(redis_client), default_ttl=settings.REPORT_CACHE_TTL)
            bus = BroadcastBus(RedisBroadcastBackend(redis_client))
        else:
            cache = Cache(InMemoryCacheBackend(), default_ttl=settings.REPORT_CACHE_TTL)
            bus = BroadcastBus(LocalBroadcastBackend(queue_size=settings.SUBSCRIBER_QUEUE_SIZE))

        runs = RunRegistry(timeout_seconds=settings.GENERATION_TIMEOUT_SECONDS)
        extractor = EntityExtractor(
            providers,
            store,
            model=settings.ENTITY_MODEL,
            max_tokens=settings.ENTITY_MAX_TOKENS,
            text_limit=settings.ENTITY_TEXT_LIMIT,
        )
        engine = GenerationEngine(
            settings=settings,
            store=store,
            cache=cache,
            bus=bus,
            providers=providers,
            runs=runs,
            extractor=extractor,
        )
        editor = SectionEditor(
            settings=settings,
            store=store,
            cache=cache,
            bus=bus,
            providers=providers,
            runs=runs,
        )
        gateway = LiveSyncGateway(bus, heartbeat_seconds=settings.LIVE_HEARTBEAT_SECONDS)

        return cls(
            settings=settings,
            store=store,
            cache=cache,
            bus=bus,
            providers=providers,
            runs=runs,
            engine=engine,
            editor=editor,
            gateway=gateway,
            redis=redis_client,
        )

    @classmethod
    async def start(cls, settings: Settings | None = None, **overrides) -> "EngineContext":
        """Connect to Redis (if configured and reachable) and build the context."""
        settings = settings or get_settings()
        redis_client = await connect_redis(settings.REDIS_URL)
        context = cls.build(settings, redis_client=redis_client, **overrides)
        logger.info(
            f"Engine context started (cache={context.cache.backend_name}, "
            f"bus={context.bus.backend_name}, store={type(context.store).__name__})"
        )
        return context

    async def shutdown(self) -> None:
        await self.runs.shutdown()
        await self.bus.close()
        await self.store.close()
        if self.redis is not None:
            await self.redis.aclose()
        logger.info("Engine context shut down")
