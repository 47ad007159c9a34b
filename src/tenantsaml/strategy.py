"""SAML authentication strategies."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Mapping

import msgspec
from msgspec import Struct

from .config import SamlOptions, apply_defaults
from .exceptions import AuthenticationError, ConfigurationError
from .requests import Request
from .saml import SAML, Profile, SamlEngine

__all__ = [
    "AuthenticateOptions",
    "AuthenticationOutcome",
    "BaseSamlStrategy",
    "EngineFactory",
    "SamlStrategy",
    "StrategyAction",
    "StrategyContext",
]

logger = logging.getLogger(__name__)

EngineFactory = Callable[[SamlOptions], SamlEngine]
VerifyFunction = Callable[..., Any]
ResultCallback = Callable[[BaseException | None, Any], Awaitable[None] | None]


class StrategyAction(str, Enum):
    SUCCESS = "success"
    FAIL = "fail"
    REDIRECT = "redirect"
    RESPOND = "respond"
    PASS = "pass"
    ERROR = "error"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class AuthenticationOutcome(Struct, frozen=True, kw_only=True):
    """What the host framework should do with the request."""

    action: StrategyAction
    user: Any = None
    info: dict[str, Any] | None = None
    location: str | None = None
    body: str | None = None
    error: Any = None

    @classmethod
    def success(cls, user: Any, info: Mapping[str, Any] | None = None) -> "AuthenticationOutcome":
        return cls(action=StrategyAction.SUCCESS, user=user, info=dict(info) if info else None)

    @classmethod
    def fail(cls, info: Mapping[str, Any] | None = None) -> "AuthenticationOutcome":
        return cls(action=StrategyAction.FAIL, info=dict(info) if info else None)

    @classmethod
    def redirect(cls, location: str) -> "AuthenticationOutcome":
        return cls(action=StrategyAction.REDIRECT, location=location)

    @classmethod
    def respond(cls, body: str) -> "AuthenticationOutcome":
        return cls(action=StrategyAction.RESPOND, body=body)

    @classmethod
    def passed(cls) -> "AuthenticationOutcome":
        return cls(action=StrategyAction.PASS)

    @classmethod
    def errored(cls, error: BaseException) -> "AuthenticationOutcome":
        return cls(action=StrategyAction.ERROR, error=error)


class AuthenticateOptions(Struct, frozen=True, kw_only=True):
    saml_fallback: Literal["login-request", "logout-request"] = "login-request"
    relay_state: str | None = None


@dataclass(frozen=True, slots=True)
class StrategyContext:
    """Options and engine that serve one operation."""

    options: SamlOptions
    engine: SamlEngine


class BaseSamlStrategy:
    """Request handling shared by the single- and multi-tenant strategies.

    Every operation receives the :class:`StrategyContext` it must run against,
    so subclasses decide where the engine comes from.
    """

    name = "saml"

    def __init__(self, verify: VerifyFunction, *, pass_request_to_callback: bool = False) -> None:
        if not callable(verify):
            raise ConfigurationError("SAML authentication strategy requires a verify function")
        self._verify = verify
        self.pass_request_to_callback = pass_request_to_callback

    async def _authenticate(
        self,
        context: StrategyContext,
        request: Request,
        options: AuthenticateOptions | None,
    ) -> AuthenticationOutcome:
        options = options or AuthenticateOptions()
        engine = context.engine
        try:
            relay_state = await self._relay_state(context, request, options)
            saml_response = await request.form_value("SAMLResponse")
            if saml_response:
                profile, logged_out = await engine.validate_post_response(saml_response)
                if logged_out or profile is None:
                    return AuthenticationOutcome.passed()
                return await self._verified(request, profile)
            saml_request = await request.form_value("SAMLRequest")
            if saml_request:
                profile = await engine.validate_post_request(saml_request)
                outcome = await self._verified(request, profile)
                if outcome.action is not StrategyAction.SUCCESS:
                    return outcome
                return AuthenticationOutcome.redirect(
                    await engine.logout_response_url(profile, relay_state=relay_state)
                )
            if options.saml_fallback == "logout-request":
                user = _as_profile(request.user)
                return AuthenticationOutcome.redirect(await engine.logout_url(user, relay_state=relay_state))
            if context.options.authn_request_binding == "HTTP-POST":
                return AuthenticationOutcome.respond(await engine.authorize_form(request, relay_state=relay_state))
            return AuthenticationOutcome.redirect(await engine.authorize_url(request, relay_state=relay_state))
        except Exception as exc:
            logger.warning("SAML authentication failed for %s: %s", context.options.entity_id, exc)
            return AuthenticationOutcome.errored(exc)

    async def _logout(self, context: StrategyContext, request: Request, callback: ResultCallback) -> None:
        try:
            user = _as_profile(request.user)
            location = await context.engine.logout_url(
                user,
                relay_state=context.options.additional_params.get("RelayState"),
            )
        except Exception as exc:
            logger.warning("SAML logout failed for %s: %s", context.options.entity_id, exc)
            await deliver(callback, exc, None)
            return
        await deliver(callback, None, location)

    @staticmethod
    def _metadata(context: StrategyContext, decryption_cert: str | None, signing_cert: str | None) -> str:
        return context.engine.generate_service_provider_metadata(decryption_cert, signing_cert)

    async def _verified(self, request: Request, profile: Profile) -> AuthenticationOutcome:
        args = (request, profile) if self.pass_request_to_callback else (profile,)
        try:
            result = self._verify(*args)
            if inspect.isawaitable(result):
                result = await result
        except AuthenticationError as exc:
            return AuthenticationOutcome.fail({"message": str(exc)})
        info: Mapping[str, Any] | None = None
        if isinstance(result, tuple):
            result, info = result
        if not result:
            return AuthenticationOutcome.fail(info or {"message": "verification_failed"})
        return AuthenticationOutcome.success(result, info)

    @staticmethod
    async def _relay_state(
        context: StrategyContext,
        request: Request,
        options: AuthenticateOptions,
    ) -> str | None:
        if options.relay_state:
            return options.relay_state
        return (
            await request.form_value("RelayState")
            or request.query_value("RelayState")
            or context.options.additional_params.get("RelayState")
        )


class SamlStrategy(BaseSamlStrategy):
    """Strategy bound to one fixed set of options."""

    def __init__(
        self,
        options: SamlOptions,
        verify: VerifyFunction,
        *,
        pass_request_to_callback: bool = False,
        engine_factory: EngineFactory = SAML,
    ) -> None:
        super().__init__(verify, pass_request_to_callback=pass_request_to_callback)
        options = apply_defaults(options)
        self._context = StrategyContext(options=options, engine=engine_factory(options))

    @property
    def options(self) -> SamlOptions:
        return self._context.options

    async def authenticate(self, request: Request, options: AuthenticateOptions | None = None) -> AuthenticationOutcome:
        return await self._authenticate(self._context, request, options)

    async def logout(self, request: Request, callback: ResultCallback) -> None:
        await self._logout(self._context, request, callback)

    def generate_service_provider_metadata(
        self,
        decryption_cert: str | None = None,
        signing_cert: str | None = None,
    ) -> str:
        return self._metadata(self._context, decryption_cert, signing_cert)


async def deliver(callback: ResultCallback, error: BaseException | None, result: Any) -> None:
    """Invoke a result callback that may be a plain function or a coroutine function."""

    outcome = callback(error, result)
    if inspect.isawaitable(outcome):
        await outcome


def _as_profile(user: Any) -> Profile:
    if isinstance(user, Profile):
        return user
    if user is None:
        raise AuthenticationError("no_active_session")
    try:
        return msgspec.convert(user, type=Profile, from_attributes=not isinstance(user, Mapping))
    except msgspec.ValidationError as exc:
        raise AuthenticationError("invalid_session_user") from exc
