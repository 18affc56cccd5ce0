import json
import time
from typing import AsyncGenerator, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from httpx import AsyncClient, ASGITransport
from jwt.algorithms import RSAAlgorithm
from sqlalchemy import func, select

from brickai.core.config import Settings
from brickai.core.container import ServiceContainer, build_container
from brickai.core.database import create_db_and_tables

BUNDLE_ID = "com.example.brickai"
TEAM_ID = "TEAMID1234"
KEY_ID = "CLIENTKEY1"
APPLE_KID = "apple-signing-key-1"
APPLE_ISSUER = "https://appleid.apple.com"
APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"
TRANSFORM_URL = "https://transform.example.com/v1/chat/completions"
RESULT_URL = "https://cdn.example.com/results/lego.png"
SESSION_SECRET = "test-session-secret-0123456789abcdef"

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
RESULT_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x01" * 128


# =============================================================================
# Key material
# =============================================================================

@pytest.fixture(scope="session")
def client_assertion_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def client_assertion_pem(client_assertion_key) -> str:
    return client_assertion_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture(scope="session")
def apple_signing_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def apple_jwks(apple_signing_key) -> Dict:
    jwk = json.loads(RSAAlgorithm.to_jwk(apple_signing_key.public_key()))
    jwk.update({"kid": APPLE_KID, "alg": "RS256", "use": "sig"})
    return {"keys": [jwk]}


@pytest.fixture
def make_identity_token(apple_signing_key) -> Callable[..., str]:
    """Identity token as Apple would sign it."""

    def _make(
        subject: str,
        email: Optional[str] = None,
        audience: str = BUNDLE_ID,
        issuer: str = APPLE_ISSUER,
        kid: str = APPLE_KID,
        key=None,
        expires_in: int = 600
    ) -> str:
        now = int(time.time())
        claims = {"iss": issuer, "aud": audience, "sub": subject, "iat": now, "exp": now + expires_in}
        if email:
            claims["email"] = email
            claims["email_verified"] = "true"
        return jwt.encode(claims, key or apple_signing_key, algorithm="RS256", headers={"kid": kid})

    return _make


# =============================================================================
# Fake upstreams (Apple + transformation service + result CDN)
# =============================================================================

def sse_body(*fragments: str, done: bool = True) -> List[bytes]:
    """Event-stream chunks carrying chat-completion deltas."""
    chunks = [
        f"data: {json.dumps({'choices': [{'delta': {'content': fragment}}]})}\n\n".encode()
        for fragment in fragments
    ]
    if done:
        chunks.append(b"data: [DONE]\n\n")
    return chunks


class FakeUpstream:
    """httpx.MockTransport handler standing in for every outbound dependency."""

    def __init__(self, jwks: Dict):
        self.jwks = jwks
        self.keys_fetches = 0
        self.token_requests: List[Dict[str, str]] = []
        self.token_handler: Callable[[Dict[str, str]], httpx.Response] = (
            lambda form: httpx.Response(400, json={"error": "invalid_grant"})
        )
        self.transform_requests: List[Dict] = []
        self.stream_status = 200
        self.stream_chunks: List = sse_body("no image here")
        self.downloads: Dict[str, Tuple[int, bytes, str]] = {}

    def respond_with_tokens(self, id_token: str, refresh_token: Optional[str] = None):
        body = {"access_token": "access", "token_type": "Bearer", "expires_in": 3600, "id_token": id_token}
        if refresh_token:
            body["refresh_token"] = refresh_token
        self.token_handler = lambda form: httpx.Response(200, json=body)

    async def _stream(self):
        for chunk in self.stream_chunks:
            if isinstance(chunk, BaseException):
                raise chunk
            if callable(chunk):
                await chunk()
                continue
            yield chunk

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)

        if url == APPLE_KEYS_URL:
            self.keys_fetches += 1
            return httpx.Response(200, json=self.jwks)

        if url == APPLE_TOKEN_URL:
            form = dict(parse_qsl(request.content.decode()))
            self.token_requests.append(form)
            return self.token_handler(form)

        if url == TRANSFORM_URL:
            self.transform_requests.append(json.loads(request.content))
            if self.stream_status != 200:
                return httpx.Response(self.stream_status, json={"error": {"message": "upstream failure"}})
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=self._stream()
            )

        if url in self.downloads:
            status, content, content_type = self.downloads[url]
            return httpx.Response(status, content=content, headers={"content-type": content_type})

        return httpx.Response(404)


@pytest.fixture
def upstream(apple_jwks) -> FakeUpstream:
    fake = FakeUpstream(apple_jwks)
    fake.downloads[RESULT_URL] = (200, RESULT_BYTES, "image/png")
    return fake


# =============================================================================
# Settings, container, client
# =============================================================================

@pytest.fixture
def settings_factory(tmp_path, client_assertion_pem) -> Callable[..., Settings]:
    def _make(**overrides) -> Settings:
        values = dict(
            DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'brickai.db'}",
            SESSION_JWT_SECRET=SESSION_SECRET,
            APPLE_BUNDLE_ID=BUNDLE_ID,
            APPLE_TEAM_ID=TEAM_ID,
            APPLE_KEY_ID=KEY_ID,
            APPLE_PRIVATE_KEY=client_assertion_pem,
            TRANSFORM_API_URL=TRANSFORM_URL,
            TRANSFORM_API_KEY="transform-test-key",
            STORAGE_BACKEND="local",
            LOCAL_STORAGE_PATH=str(tmp_path / "storage"),
            PUBLIC_BASE_URL="http://testserver",
            LOG_FORMAT_JSON=False,
        )
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(settings_factory) -> Settings:
    return settings_factory()


@pytest.fixture
async def container_factory(upstream):
    """Containers wired to the fake upstreams, closed at teardown."""
    built: List[ServiceContainer] = []

    async def _make(settings: Settings) -> ServiceContainer:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        container = build_container(settings, http_client=http_client)
        await create_db_and_tables(container.engine)
        built.append(container)
        return container

    yield _make

    for container in built:
        await container.aclose()


@pytest.fixture
async def container(settings, container_factory) -> ServiceContainer:
    return await container_factory(settings)


@pytest.fixture
async def client(settings, container) -> AsyncGenerator[AsyncClient, None]:
    from brickai.main import create_app

    app = create_app(settings=settings, container=container)
    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac


async def count_rows(container: ServiceContainer, model) -> int:
    async with container.session_maker() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return result.scalar_one()
