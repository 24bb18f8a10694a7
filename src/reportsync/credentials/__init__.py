from .envelope import CredentialCipher, generate_encryption_key, is_encrypted
from .manager import TokenManager
from .provider import IdentityProvider, OAuthProviderClient

__all__ = [
    "CredentialCipher",
    "IdentityProvider",
    "OAuthProviderClient",
    "TokenManager",
    "generate_encryption_key",
    "is_encrypted",
]
