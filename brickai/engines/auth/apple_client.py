"""
Sign in with Apple Client

Talks to Apple's token endpoint on behalf of the backend:

- Mints the ES256 client assertion required on every token call
- Exchanges authorization codes and stored refresh tokens
- Verifies the returned identity token against Apple's published keys

Signing keys are cached process-wide with a bounded TTL. Readers use the
current snapshot; a refetch (expired cache or unknown key id) is serialized
behind a lock so concurrent verifications trigger a single download.
"""

import asyncio
import time
from typing import Callable, Dict, Optional, Tuple

import httpx
import jwt

from brickai.core.config import Settings
from brickai.core.exceptions import (
    ConfigurationError,
    IdentityAssertionInvalidError,
    InvalidGrantError,
    ProviderRejectedError,
    ProviderUnreachableError,
)
from brickai.core.logging import get_logger
from brickai.core.metrics import record_provider_call
from brickai.engines.auth.schemas import ProviderTokenSet, VerifiedIdentity

logger = get_logger(__name__)

IDENTITY_TOKEN_ALGORITHM = "RS256"
CLIENT_ASSERTION_ALGORITHM = "ES256"


def normalize_private_key(raw: str) -> str:
    """Turn an env-escaped PEM (literal ``\\n``) back into a real PEM."""
    pem = raw.replace("\\n", "\n").strip()
    if "BEGIN" not in pem or "PRIVATE KEY" not in pem:
        raise ConfigurationError(
            "Internal configuration error: APPLE_PRIVATE_KEY is not a PEM private key",
            setting="APPLE_PRIVATE_KEY"
        )
    return pem


# =============================================================================
# Signing Key Cache
# =============================================================================

class AppleSigningKeys:
    """TTL cache of Apple's JWKS, keyed by key id."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        keys_url: str,
        ttl_seconds: float = 3600,
        timeout: float = 10.0,
        clock: Optional[Callable[[], float]] = None
    ):
        self._http = http_client
        self._keys_url = keys_url
        self._ttl = ttl_seconds
        self._timeout = timeout
        self._clock = clock or time.monotonic
        self._keys: Dict[str, jwt.PyJWK] = {}
        self._fetched_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return self._fetched_at is not None and (self._clock() - self._fetched_at) < self._ttl

    async def get_key(self, kid: str) -> jwt.PyJWK:
        if self._is_fresh() and kid in self._keys:
            return self._keys[kid]

        seen_fetch = self._fetched_at
        async with self._lock:
            # Skip the download if another task refreshed while we waited
            if self._fetched_at == seen_fetch and not (self._is_fresh() and kid in self._keys):
                await self._refresh()

        key = self._keys.get(kid)
        if key is None:
            raise IdentityAssertionInvalidError(
                "Identity token signed with an unknown key",
                details={"kid": kid}
            )
        return key

    async def _refresh(self):
        try:
            response = await self._http.get(self._keys_url, timeout=self._timeout)
        except httpx.HTTPError as e:
            logger.warning("signing_keys_fetch_failed", error=type(e).__name__)
            raise ProviderUnreachableError("Could not fetch identity provider signing keys")

        if response.status_code != 200:
            logger.warning("signing_keys_fetch_failed", http_status=response.status_code)
            raise ProviderUnreachableError(
                "Could not fetch identity provider signing keys",
                details={"http_status": response.status_code}
            )

        try:
            key_set = jwt.PyJWKSet.from_dict(response.json())
        except (ValueError, jwt.PyJWKSetError) as e:
            logger.warning("signing_keys_unusable", error=str(e))
            raise IdentityAssertionInvalidError("Identity provider published no usable signing keys")

        self._keys = {key.key_id: key for key in key_set.keys if key.key_id}
        self._fetched_at = self._clock()
        logger.info("signing_keys_refreshed", key_count=len(self._keys))


# =============================================================================
# Identity Exchange Client
# =============================================================================

class AppleIdentityClient:
    """Code and refresh-token exchange against Apple's token endpoint."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        signing_keys: AppleSigningKeys,
        clock: Optional[Callable[[], float]] = None
    ):
        self.settings = settings
        self._http = http_client
        self._signing_keys = signing_keys
        self._clock = clock or time.time

    def make_client_assertion(self) -> str:
        """Short-lived ES256 statement identifying this backend to Apple.

        Built fresh for every token call.
        """
        team_id, key_id, bundle_id, raw_key = self.settings.require(
            "APPLE_TEAM_ID", "APPLE_KEY_ID", "APPLE_BUNDLE_ID", "APPLE_PRIVATE_KEY"
        )
        private_key = normalize_private_key(raw_key)
        now = int(self._clock())
        claims = {
            "iss": team_id,
            "iat": now,
            "exp": now + self.settings.CLIENT_ASSERTION_TTL_SECONDS,
            "aud": self.settings.APPLE_ISSUER,
            "sub": bundle_id,
        }
        try:
            return jwt.encode(
                claims,
                private_key,
                algorithm=CLIENT_ASSERTION_ALGORITHM,
                headers={"kid": key_id}
            )
        except (ValueError, TypeError, jwt.PyJWTError):
            raise ConfigurationError(
                "Internal configuration error: APPLE_PRIVATE_KEY cannot sign ES256 assertions",
                setting="APPLE_PRIVATE_KEY"
            )

    async def exchange_code(self, code: str) -> Tuple[ProviderTokenSet, VerifiedIdentity]:
        """Trade a one-time authorization code for a verified identity and refresh token."""
        tokens = await self._token_call("authorization_code", {"code": code})
        identity = await self.verify_identity_token(tokens.id_token)
        return tokens, identity

    async def exchange_refresh_token(
        self,
        refresh_token: str,
        expected_subject: str
    ) -> Tuple[ProviderTokenSet, VerifiedIdentity]:
        """Trade a stored refresh token for a fresh identity assertion.

        The returned refresh token is None when Apple did not rotate it.
        """
        tokens = await self._token_call("refresh_token", {"refresh_token": refresh_token})
        identity = await self.verify_identity_token(tokens.id_token, expected_subject=expected_subject)
        return tokens, identity

    async def _token_call(self, grant_type: str, grant_fields: Dict[str, str]) -> ProviderTokenSet:
        (bundle_id,) = self.settings.require("APPLE_BUNDLE_ID")
        form = {
            "client_id": bundle_id,
            "client_secret": self.make_client_assertion(),
            "grant_type": grant_type,
            **grant_fields,
        }

        try:
            response = await self._http.post(
                self.settings.APPLE_TOKEN_URL,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self.settings.PROVIDER_TIMEOUT_SECONDS
            )
        except httpx.HTTPError as e:
            record_provider_call(grant_type, "unreachable")
            logger.warning("provider_unreachable", grant_type=grant_type, error=type(e).__name__)
            raise ProviderUnreachableError("Identity provider is unreachable")

        if response.status_code >= 500:
            record_provider_call(grant_type, "unreachable")
            logger.warning("provider_unavailable", grant_type=grant_type, http_status=response.status_code)
            raise ProviderUnreachableError(
                "Identity provider is unavailable",
                details={"http_status": response.status_code}
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        provider_error = body.get("error")
        if response.status_code != 200 or provider_error:
            if provider_error == "invalid_grant":
                record_provider_call(grant_type, "invalid_grant")
                logger.info("provider_invalid_grant", grant_type=grant_type)
                raise InvalidGrantError(
                    "Authorization grant is invalid or has been revoked",
                    provider_error=provider_error,
                    http_status=response.status_code
                )
            record_provider_call(grant_type, "rejected")
            logger.warning(
                "provider_rejected",
                grant_type=grant_type,
                provider_error=provider_error,
                http_status=response.status_code
            )
            raise ProviderRejectedError(
                "Identity provider rejected the token request",
                provider_error=provider_error,
                http_status=response.status_code
            )

        if not body.get("id_token"):
            record_provider_call(grant_type, "rejected")
            raise ProviderRejectedError(
                "Identity provider response carried no identity token",
                http_status=response.status_code
            )

        record_provider_call(grant_type, "success")
        return ProviderTokenSet(
            id_token=body["id_token"],
            refresh_token=body.get("refresh_token") or None
        )

    async def verify_identity_token(
        self,
        id_token: str,
        expected_subject: Optional[str] = None
    ) -> VerifiedIdentity:
        """Check signature, issuer, audience and (optionally) subject of an identity token."""
        (bundle_id,) = self.settings.require("APPLE_BUNDLE_ID")

        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.PyJWTError:
            raise IdentityAssertionInvalidError("Identity token is malformed")

        if header.get("alg") != IDENTITY_TOKEN_ALGORITHM or not header.get("kid"):
            raise IdentityAssertionInvalidError("Identity token header is not acceptable")

        signing_key = await self._signing_keys.get_key(header["kid"])

        try:
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=[IDENTITY_TOKEN_ALGORITHM],
                audience=bundle_id,
                issuer=self.settings.APPLE_ISSUER,
                options={"require": ["sub", "iss", "aud", "exp"]},
            )
        except jwt.PyJWTError as e:
            logger.warning("identity_token_rejected", reason=type(e).__name__)
            raise IdentityAssertionInvalidError("Identity token failed verification")

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise IdentityAssertionInvalidError("Identity token has no subject")
        if expected_subject is not None and subject != expected_subject:
            logger.warning("identity_subject_mismatch")
            raise IdentityAssertionInvalidError("Identity token subject does not match the session")

        return VerifiedIdentity(
            subject=subject,
            email=claims.get("email")
        )
