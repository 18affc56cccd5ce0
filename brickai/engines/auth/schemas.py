from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class AuthExchangeRequestDTO(BaseModel):
    """One-time authorization code handed to the client by Sign in with Apple."""
    model_config = ConfigDict(populate_by_name=True)

    authorization_code: str = Field(..., min_length=1, alias="authorizationCode")


class AuthExchangeResponseDTO(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_token: str = Field(..., alias="sessionToken")
    subject: str
    email: Optional[str] = None


class AuthRefreshResponseDTO(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_token: str = Field(..., alias="sessionToken")


class ProviderTokenSet(BaseModel):
    """Outcome of a token call to the identity provider."""
    id_token: str
    refresh_token: Optional[str] = None


class VerifiedIdentity(BaseModel):
    """Claims taken from a verified identity assertion."""
    subject: str
    email: Optional[str] = None
