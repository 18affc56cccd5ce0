"""
Auth Flows

AuthService turns a one-time authorization code (first login) or an
expired session token (refresh) into a fresh session token. Neither flow
retries; a provider outage surfaces to the caller.
"""

from brickai.core.exceptions import InvalidGrantError, UnauthorizedError
from brickai.core.logging import get_logger
from brickai.engines.auth.apple_client import AppleIdentityClient
from brickai.engines.auth.schemas import AuthExchangeResponseDTO, AuthRefreshResponseDTO
from brickai.engines.auth.session_tokens import SessionTokenService
from brickai.modules.users.repository import UserRepository

logger = get_logger(__name__)


class AuthService:

    def __init__(
        self,
        identity_client: AppleIdentityClient,
        session_tokens: SessionTokenService,
        users: UserRepository
    ):
        self.identity_client = identity_client
        self.session_tokens = session_tokens
        self.users = users

    async def exchange(self, authorization_code: str) -> AuthExchangeResponseDTO:
        """
        First login.

        1. Exchange the code with the provider (codes are single use, so a
           retried request fails here and nothing is written)
        2. Verify the identity token
        3. Upsert the subject row with the new refresh token
        4. Issue a session token
        """
        tokens, identity = await self.identity_client.exchange_code(authorization_code)

        await self.users.upsert_identity(
            identity.subject,
            refresh_token=tokens.refresh_token,
            email=identity.email
        )

        session_token = self.session_tokens.issue(identity.subject)
        logger.info("auth_exchange_succeeded", has_email=identity.email is not None)

        return AuthExchangeResponseDTO(
            session_token=session_token,
            subject=identity.subject,
            email=identity.email
        )

    async def refresh(self, expired_session_token: str) -> AuthRefreshResponseDTO:
        """
        Re-issue a session token from an expired one.

        The stored refresh token is the trust root: an ``invalid_grant`` from
        the provider clears it and the subject must sign in again.
        """
        subject = self.session_tokens.verify(expired_session_token, allow_expired=True)

        user = await self.users.get_by_subject(subject)
        if user is None or not user.apple_refresh_token:
            logger.info("auth_refresh_denied", reason="no_refresh_token", user_known=user is not None)
            raise UnauthorizedError("No usable refresh token, sign in again")

        try:
            tokens, _ = await self.identity_client.exchange_refresh_token(
                user.apple_refresh_token,
                expected_subject=subject
            )
        except InvalidGrantError:
            try:
                await self.users.set_refresh_token(subject, None)
            except Exception as e:
                logger.error("refresh_token_clear_failed", user_id=user.id, error=str(e))
            logger.info("auth_refresh_denied", reason="invalid_grant", user_id=user.id)
            raise UnauthorizedError("Refresh token was revoked, sign in again")

        if tokens.refresh_token and tokens.refresh_token != user.apple_refresh_token:
            try:
                await self.users.set_refresh_token(subject, tokens.refresh_token)
                logger.info("refresh_token_rotated", user_id=user.id)
            except Exception as e:
                # The session is still valid; the old token keeps working until Apple revokes it
                logger.error("refresh_token_persist_failed", user_id=user.id, error=str(e))

        session_token = self.session_tokens.issue(subject)
        logger.info("auth_refresh_succeeded", user_id=user.id)
        return AuthRefreshResponseDTO(session_token=session_token)
