"""Multi-tenant SAML authentication strategies."""

from .cache import CacheProvider, InMemoryCacheProvider
from .config import MultiSamlConfig, SamlOptions
from .exceptions import (
    AuthenticationError,
    ConfigResolutionError,
    ConfigurationError,
    InvalidUsageError,
    TenantSamlError,
)
from .multi import MultiSamlStrategy
from .requests import Request
from .saml import SAML, Profile, SamlEngine
from .strategy import (
    AuthenticateOptions,
    AuthenticationOutcome,
    SamlStrategy,
    StrategyAction,
)
from .tenancy import TenantContext, TenantOptionsRegistry, TenantResolutionError, TenantResolver

__all__ = [
    "SAML",
    "AuthenticateOptions",
    "AuthenticationError",
    "AuthenticationOutcome",
    "CacheProvider",
    "ConfigResolutionError",
    "ConfigurationError",
    "InMemoryCacheProvider",
    "InvalidUsageError",
    "MultiSamlConfig",
    "MultiSamlStrategy",
    "Profile",
    "Request",
    "SamlEngine",
    "SamlOptions",
    "SamlStrategy",
    "StrategyAction",
    "TenantContext",
    "TenantOptionsRegistry",
    "TenantResolutionError",
    "TenantResolver",
    "TenantSamlError",
]
