"""Strategy configuration objects."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Mapping, Union

import msgspec
from msgspec import Struct, structs

from .cache import DEFAULT_KEY_EXPIRATION_PERIOD_MS, InMemoryCacheProvider
from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .requests import Request

__all__ = [
    "DEFAULT_REQUEST_ID_EXPIRATION_PERIOD_MS",
    "MultiSamlConfig",
    "OptionsResolver",
    "SamlOptions",
    "apply_defaults",
    "overlay_options",
]

DEFAULT_REQUEST_ID_EXPIRATION_PERIOD_MS = DEFAULT_KEY_EXPIRATION_PERIOD_MS

OptionsFragment = Union[Mapping[str, Any], None]
OptionsResolver = Callable[["Request"], Union[Awaitable[OptionsFragment], OptionsFragment]]


class SamlOptions(Struct, frozen=True, kw_only=True):
    """Protocol settings for one service provider / identity provider pairing."""

    entry_point: str | None = None
    logout_url: str | None = None
    callback_url: str | None = None
    logout_callback_url: str | None = None
    entity_id: str = "tenantsaml"
    idp_issuer: str | None = None
    audience: str | None = None
    cert: str | tuple[str, ...] | None = None
    private_key: str | None = None
    signature_algorithm: Literal["sha1", "sha256", "sha512"] = "sha256"
    identifier_format: str | None = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
    authn_context: tuple[str, ...] = ("urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport",)
    force_authn: bool = False
    passive: bool = False
    provider_name: str | None = None
    authn_request_binding: Literal["HTTP-Redirect", "HTTP-POST"] = "HTTP-Redirect"
    additional_params: dict[str, str] = msgspec.field(default_factory=dict)
    additional_authorize_params: dict[str, str] = msgspec.field(default_factory=dict)
    additional_logout_params: dict[str, str] = msgspec.field(default_factory=dict)
    accepted_clock_skew_ms: int = 0
    validate_in_response_to: bool = False
    request_id_expiration_period_ms: int | None = None
    attribute_mapping: dict[str, str] = msgspec.field(default_factory=dict)
    cache_provider: Any = None

    @property
    def certificates(self) -> tuple[str, ...]:
        if self.cert is None:
            return ()
        if isinstance(self.cert, str):
            return (self.cert,) if self.cert.strip() else ()
        return tuple(cert for cert in self.cert if cert.strip())


def apply_defaults(options: SamlOptions) -> SamlOptions:
    """Fill in the request-id expiration and the replay store when absent."""

    expiration = options.request_id_expiration_period_ms or DEFAULT_REQUEST_ID_EXPIRATION_PERIOD_MS
    if expiration < 0:
        raise ConfigurationError("request_id_expiration_period_ms must be positive")
    cache_provider = options.cache_provider
    if cache_provider is None:
        cache_provider = InMemoryCacheProvider(key_expiration_period_ms=expiration)
    return structs.replace(
        options,
        request_id_expiration_period_ms=expiration,
        cache_provider=cache_provider,
    )


def overlay_options(base: SamlOptions, overrides: Mapping[str, Any] | None) -> SamlOptions:
    """Return ``base`` with ``overrides`` applied, leaving ``base`` untouched."""

    if not overrides:
        return base
    unknown = sorted(set(overrides) - set(base.__struct_fields__))
    if unknown:
        raise ConfigurationError(f"Unknown SAML options: {', '.join(unknown)}")
    merged = structs.asdict(base)
    merged.update(overrides)
    if isinstance(merged.get("cert"), list):
        merged["cert"] = tuple(merged["cert"])
    try:
        return msgspec.convert(merged, type=SamlOptions)
    except msgspec.ValidationError as exc:
        raise ConfigurationError(f"Invalid SAML options: {exc}") from exc


@dataclass(frozen=True, slots=True)
class MultiSamlConfig:
    """Immutable configuration shared by every request of a multi-tenant strategy."""

    options: SamlOptions
    resolver: OptionsResolver

    @classmethod
    def create(cls, options: SamlOptions | None, resolver: OptionsResolver | None) -> "MultiSamlConfig":
        if resolver is None or not callable(resolver):
            raise ConfigurationError("A resolver for per-request SAML options is required")
        return cls(options=apply_defaults(options or SamlOptions()), resolver=resolver)

    @property
    def request_id_expiration_period_ms(self) -> int:
        return self.options.request_id_expiration_period_ms or DEFAULT_REQUEST_ID_EXPIRATION_PERIOD_MS

    @property
    def cache_provider(self) -> Any:
        return self.options.cache_provider

    def effective_options(self, overrides: Mapping[str, Any] | None) -> SamlOptions:
        return overlay_options(self.options, overrides)
