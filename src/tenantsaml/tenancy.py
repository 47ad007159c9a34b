"""Tenant resolution and per-tenant option lookup."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from msgspec import Struct

from .exceptions import ConfigResolutionError

if TYPE_CHECKING:
    from .requests import Request

__all__ = [
    "TenantContext",
    "TenantOptionsRegistry",
    "TenantResolutionError",
    "TenantResolver",
]

logger = logging.getLogger(__name__)

_HOSTNAME_ALLOWED_CHARS = frozenset("abcdefghijklmnopqrstuvwxyz0123456789-.")
_MAX_HOSTNAME_LENGTH = 253
_MAX_LABEL_LENGTH = 63


class TenantContext(Struct, frozen=True):
    tenant: str
    site: str
    domain: str

    @property
    def host(self) -> str:
        return f"{self.tenant}.{self.site}.{self.domain}"


class TenantResolutionError(ConfigResolutionError):
    """Raised when a hostname cannot be mapped to a tenant."""


class TenantResolver:
    """Map ``<tenant>.<site>.<domain>`` host headers onto :class:`TenantContext`."""

    def __init__(self, *, site: str, domain: str, allowed_tenants: Iterable[str] | None = None) -> None:
        self.site = site
        self.domain = domain
        self.allowed_tenants = set(allowed_tenants or ())

    def resolve(self, host: str) -> TenantContext:
        hostname = _normalize_host(host).split(":", 1)[0]
        suffix = f".{self.site}.{self.domain}"
        if not hostname.endswith(suffix):
            raise TenantResolutionError(f"Host {host} is not served by {self.site}.{self.domain}")
        tenant = hostname[: -len(suffix)]
        if not tenant or "." in tenant:
            raise TenantResolutionError(f"Ambiguous tenant hostname: {host}")
        if self.allowed_tenants and tenant not in self.allowed_tenants:
            raise TenantResolutionError(f"Unknown tenant '{tenant}' for host {host}")
        return TenantContext(tenant=tenant, site=self.site, domain=self.domain)

    def context_for(self, tenant: str) -> TenantContext:
        if self.allowed_tenants and tenant not in self.allowed_tenants:
            raise TenantResolutionError(f"Unknown tenant '{tenant}'")
        return TenantContext(tenant=tenant, site=self.site, domain=self.domain)


class TenantOptionsRegistry:
    """Static per-tenant SAML option overrides usable as a strategy resolver.

    The tenant comes from ``request.tenant`` when the host framework has set it,
    otherwise from the ``Host`` header through ``resolver``.
    """

    def __init__(
        self,
        tenants: Mapping[str, Mapping[str, Any]] | None = None,
        *,
        resolver: TenantResolver | None = None,
    ) -> None:
        self._tenants: dict[str, dict[str, Any]] = {name: dict(values) for name, values in (tenants or {}).items()}
        self.resolver = resolver

    def register(self, tenant: str, options: Mapping[str, Any]) -> None:
        self._tenants[tenant] = dict(options)

    async def __call__(self, request: "Request") -> Mapping[str, Any]:
        tenant = self.tenant_for(request)
        try:
            options = self._tenants[tenant]
        except KeyError as exc:
            raise ConfigResolutionError(f"No SAML configuration for tenant '{tenant}'") from exc
        logger.debug("Resolved SAML options for tenant %s", tenant)
        return dict(options)

    def tenant_for(self, request: "Request") -> str:
        if request.tenant is not None:
            return request.tenant.tenant
        if self.resolver is None:
            raise TenantResolutionError("Request carries no tenant and no host resolver is configured")
        return self.resolver.resolve(request.host or "").tenant


def _normalize_host(raw: str) -> str:
    if not raw:
        raise TenantResolutionError("Host header is empty")
    if raw != raw.strip() or any(ord(char) <= 31 or char == "\x7f" for char in raw):
        raise TenantResolutionError("Host header contains control characters")
    hostname, sep, port = raw.lower().partition(":")
    if not hostname or hostname.startswith(".") or hostname.endswith(".") or ".." in hostname:
        raise TenantResolutionError("Host header is not a valid DNS name")
    if len(hostname) > _MAX_HOSTNAME_LENGTH or any(len(label) > _MAX_LABEL_LENGTH for label in hostname.split(".")):
        raise TenantResolutionError("Host header is too long")
    if any(char not in _HOSTNAME_ALLOWED_CHARS for char in hostname):
        raise TenantResolutionError("Host header contains invalid characters")
    if sep and (not port.isdigit() or not 0 < int(port) <= 65535):
        raise TenantResolutionError("Host header contains an invalid port")
    return hostname + (sep + port if sep else "")
