"""OAuth/PKCE flows, token refresh and API-key resolution."""

from spark.credentials.manager import CredentialManager
from spark.credentials.oauth import OAuthProviderConfig, OAuthTokens
from spark.credentials.pkce import code_challenge, generate_code_verifier
from spark.credentials.state import CsrfStore, OAuthState, StateCipher

__all__ = [
    "CredentialManager",
    "CsrfStore",
    "OAuthProviderConfig",
    "OAuthState",
    "OAuthTokens",
    "StateCipher",
    "code_challenge",
    "generate_code_verifier",
]
