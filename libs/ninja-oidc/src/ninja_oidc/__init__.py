"""Ninja OIDC: Authorization Code + PKCE client with session renewal and backchannel logout."""

from ninja_oidc.authorize import AuthorizationRequestBuilder, PushedAuthorizationRequest
from ninja_oidc.backchannel import BackchannelLogoutHandler
from ninja_oidc.client import OidcClient, parse_bearer_token
from ninja_oidc.config import SdkConfiguration
from ninja_oidc.errors import (
    ConfigurationError,
    InvalidGrantError,
    InvalidTokenError,
    MissingCodeError,
    NetworkError,
    OidcError,
    ParResponseError,
    PKCELengthError,
    ReplayError,
    StateMismatchError,
    TokenCheck,
)
from ninja_oidc.exchange import TokenExchanger, TokenSet
from ninja_oidc.http import HttpClient, HttpResponse, HttpxClient
from ninja_oidc.jwks import JwksFetcher
from ninja_oidc.pkce import generate_code_challenge, generate_code_verifier
from ninja_oidc.router import create_oidc_router
from ninja_oidc.session import Credentials, Session, SessionManager, SessionState
from ninja_oidc.stores import Cache, FileStore, InMemoryStore, NullStore, Store
from ninja_oidc.transient import TransientAuthRequest, TransientStateHandler
from ninja_oidc.verifier import (
    JwksSignatureVerifier,
    SecretSignatureVerifier,
    SignatureVerifier,
    SignatureVerifierRegistry,
    TokenVerifier,
)

__all__ = [
    "AuthorizationRequestBuilder",
    "BackchannelLogoutHandler",
    "Cache",
    "ConfigurationError",
    "Credentials",
    "FileStore",
    "HttpClient",
    "HttpResponse",
    "HttpxClient",
    "InMemoryStore",
    "InvalidGrantError",
    "InvalidTokenError",
    "JwksFetcher",
    "JwksSignatureVerifier",
    "MissingCodeError",
    "NetworkError",
    "NullStore",
    "OidcClient",
    "OidcError",
    "ParResponseError",
    "PKCELengthError",
    "PushedAuthorizationRequest",
    "ReplayError",
    "SdkConfiguration",
    "SecretSignatureVerifier",
    "Session",
    "SessionManager",
    "SessionState",
    "SignatureVerifier",
    "SignatureVerifierRegistry",
    "StateMismatchError",
    "Store",
    "TokenCheck",
    "TokenExchanger",
    "TokenSet",
    "TokenVerifier",
    "TransientAuthRequest",
    "TransientStateHandler",
    "create_oidc_router",
    "generate_code_challenge",
    "generate_code_verifier",
    "parse_bearer_token",
]
