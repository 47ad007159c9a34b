"""Error types raised by tenantsaml."""

from __future__ import annotations


class TenantSamlError(Exception):
    """Base error type."""


class ConfigurationError(TenantSamlError):
    """Raised when strategy or engine options are unusable."""


class ConfigResolutionError(TenantSamlError):
    """Raised when per-request options cannot be resolved."""


class InvalidUsageError(TenantSamlError, TypeError):
    """Raised when an operation is called in a way it does not support."""


class AuthenticationError(TenantSamlError):
    """Raised when a SAML message fails validation."""
