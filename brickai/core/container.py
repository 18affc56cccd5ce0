"""
Service Container

One explicitly constructed object holding every store handle and client the
handlers need. Built once in the application lifespan, stored on
``app.state.container`` and reached through FastAPI dependencies.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from brickai.core.config import Settings
from brickai.core.database import create_engine, create_session_maker
from brickai.core.logging import get_logger
from brickai.core.storage import IStorage, StorageFactory
from brickai.engines.auth.apple_client import AppleIdentityClient, AppleSigningKeys
from brickai.engines.auth.services import AuthService
from brickai.engines.auth.session_tokens import SessionTokenService
from brickai.modules.imagery.repository import ImageRepository
from brickai.modules.imagery.service import ImageService
from brickai.modules.users.repository import UserRepository
from brickai.pipeline.client import TransformationClient
from brickai.pipeline.processor import ImagePipeline

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    session_maker: async_sessionmaker
    http_client: httpx.AsyncClient
    storage: IStorage
    users: UserRepository
    images: ImageRepository
    signing_keys: AppleSigningKeys
    identity_client: AppleIdentityClient
    transform_client: TransformationClient
    pipeline: ImagePipeline
    image_service: ImageService
    _session_tokens: Optional[SessionTokenService] = None
    _auth_service: Optional[AuthService] = None

    @property
    def session_tokens(self) -> SessionTokenService:
        """Built on first use so a missing secret surfaces as ConfigurationError per request."""
        if self._session_tokens is None:
            (secret,) = self.settings.require("SESSION_JWT_SECRET")
            self._session_tokens = SessionTokenService(
                secret=secret,
                issuer=self.settings.SESSION_ISSUER,
                ttl_seconds=self.settings.SESSION_TTL_SECONDS
            )
        return self._session_tokens

    @property
    def auth_service(self) -> AuthService:
        if self._auth_service is None:
            self._auth_service = AuthService(self.identity_client, self.session_tokens, self.users)
        return self._auth_service

    async def aclose(self):
        await self.http_client.aclose()
        await self.engine.dispose()
        logger.info("container_closed")


def build_container(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    engine: Optional[AsyncEngine] = None,
    storage: Optional[IStorage] = None
) -> ServiceContainer:
    """Wire the object graph. Tests pass their own HTTP client, engine or storage."""
    engine = engine or create_engine(settings.DATABASE_URL)
    session_maker = create_session_maker(engine)
    http_client = http_client or httpx.AsyncClient()
    storage = storage or StorageFactory.create(settings)

    users = UserRepository(session_maker)
    images = ImageRepository(session_maker)

    signing_keys = AppleSigningKeys(
        http_client,
        keys_url=settings.APPLE_KEYS_URL,
        ttl_seconds=settings.APPLE_KEYS_CACHE_TTL_SECONDS,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS
    )
    identity_client = AppleIdentityClient(settings, http_client, signing_keys)

    transform_client = TransformationClient(settings, http_client)
    pipeline = ImagePipeline(settings, images, storage, transform_client, http_client)
    image_service = ImageService(settings, images, users, storage, pipeline)

    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_maker=session_maker,
        http_client=http_client,
        storage=storage,
        users=users,
        images=images,
        signing_keys=signing_keys,
        identity_client=identity_client,
        transform_client=transform_client,
        pipeline=pipeline,
        image_service=image_service
    )
