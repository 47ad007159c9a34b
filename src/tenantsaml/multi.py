"""Multi-tenant SAML strategy."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Mapping

from .config import MultiSamlConfig, OptionsResolver, SamlOptions
from .exceptions import ConfigResolutionError, InvalidUsageError
from .requests import Request
from .saml import SAML
from .strategy import (
    AuthenticateOptions,
    AuthenticationOutcome,
    BaseSamlStrategy,
    EngineFactory,
    ResultCallback,
    StrategyContext,
    VerifyFunction,
    deliver,
)

__all__ = ["MultiSamlStrategy"]

logger = logging.getLogger(__name__)


class MultiSamlStrategy(BaseSamlStrategy):
    """One strategy instance serving many identity providers.

    ``resolver`` is awaited once per operation with the incoming request and
    returns the option overrides for that request's tenant. The overrides are
    overlaid on the base options, a fresh engine is built from the result, and
    the operation runs against that engine. Nothing request-specific is stored
    on the strategy, so a single instance can serve concurrent requests for
    different tenants.

    The resolver has no timeout here; wrap it in :func:`asyncio.wait_for` if one
    is needed.
    """

    def __init__(
        self,
        options: SamlOptions | None,
        verify: VerifyFunction,
        *,
        resolver: OptionsResolver | None = None,
        pass_request_to_callback: bool = False,
        engine_factory: EngineFactory = SAML,
    ) -> None:
        self.config = MultiSamlConfig.create(options, resolver)
        super().__init__(verify, pass_request_to_callback=pass_request_to_callback)
        self._engine_factory = engine_factory

    @property
    def options(self) -> SamlOptions:
        return self.config.options

    async def authenticate(self, request: Request, options: AuthenticateOptions | None = None) -> AuthenticationOutcome:
        try:
            context = await self._context_for(request)
        except Exception as exc:
            self._log_failure("authenticate", exc)
            return AuthenticationOutcome.errored(exc)
        return await self._authenticate(context, request, options)

    async def logout(self, request: Request, callback: ResultCallback) -> None:
        try:
            context = await self._context_for(request)
        except Exception as exc:
            self._log_failure("logout", exc)
            await deliver(callback, exc, None)
            return
        await self._logout(context, request, callback)

    def generate_service_provider_metadata(
        self,
        request: Request,
        decryption_cert: str | None,
        signing_cert: str | None,
        callback: ResultCallback | None = None,
    ) -> Awaitable[None]:
        """Render metadata for the request's tenant and hand it to ``callback``.

        Options are only known after the resolver has run, so the document is
        always delivered through ``callback``; calling without one raises
        :class:`InvalidUsageError` immediately.
        """

        if callback is None or not callable(callback):
            raise InvalidUsageError("Metadata can't be provided synchronously for MultiSamlStrategy")
        return self._generate_metadata(request, decryption_cert, signing_cert, callback)

    async def _generate_metadata(
        self,
        request: Request,
        decryption_cert: str | None,
        signing_cert: str | None,
        callback: ResultCallback,
    ) -> None:
        try:
            context = await self._context_for(request)
            metadata = self._metadata(context, decryption_cert, signing_cert)
        except Exception as exc:
            self._log_failure("generate_service_provider_metadata", exc)
            await deliver(callback, exc, None)
            return
        await deliver(callback, None, metadata)

    async def _context_for(self, request: Request) -> StrategyContext:
        overrides = self.config.resolver(request)
        if inspect.isawaitable(overrides):
            overrides = await overrides
        if overrides is not None and not isinstance(overrides, Mapping):
            raise ConfigResolutionError(
                f"SAML options resolver returned {type(overrides).__name__}, expected a mapping"
            )
        options = self.config.effective_options(overrides)
        engine = self._engine_factory(options)
        logger.debug("Built SAML engine for %s", options.entity_id)
        return StrategyContext(options=options, engine=engine)

    @staticmethod
    def _log_failure(operation: str, error: Any) -> None:
        logger.warning("SAML %s aborted before delegation: %s", operation, error)
