"""Authentication: token vault, OAuth2 handshake, token refresh."""
from dealerledger.auth.handshake import ConnectionStatus, HandshakeManager, HandshakeStep
from dealerledger.auth.oauth2 import FortnoxOAuthClient, OAuthProtocolError, TokenData
from dealerledger.auth.refresh import TokenRefreshSupervisor
from dealerledger.auth.vault import CredentialVault

__all__ = [
    "ConnectionStatus",
    "CredentialVault",
    "FortnoxOAuthClient",
    "HandshakeManager",
    "HandshakeStep",
    "OAuthProtocolError",
    "TokenData",
    "TokenRefreshSupervisor",
]
