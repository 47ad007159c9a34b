"""Request primitives."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping, MutableMapping
from urllib.parse import parse_qsl

from .tenancy import TenantContext

BodyLoader = Callable[[], Awaitable[bytes | bytearray | memoryview | None]]

_MAX_FORM_FIELDS = 1024
_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


class Request:
    """Framework-neutral view of the request a strategy is asked to handle.

    Host frameworks build one per incoming HTTP request. ``tenant`` is filled in
    when the host already knows the tenant; ``user`` carries the authenticated
    :class:`~tenantsaml.saml.Profile` for logout.
    """

    __slots__ = (
        "_body",
        "_body_loader",
        "_body_lock",
        "_form",
        "_query_params",
        "_raw_query",
        "headers",
        "method",
        "path",
        "tenant",
        "user",
    )

    def __init__(
        self,
        *,
        method: str,
        path: str,
        headers: Mapping[str, str] | None = None,
        tenant: TenantContext | None = None,
        query_string: str | None = None,
        body: bytes | None = None,
        body_loader: BodyLoader | None = None,
        user: Any = None,
    ) -> None:
        if body is not None and body_loader is not None:
            raise ValueError("Request body and body_loader are mutually exclusive")
        self.method = method.upper()
        self.path = path
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.tenant = tenant
        self._raw_query = query_string or ""
        self._body: bytes | None = body
        self._body_loader = body_loader
        self._body_lock = asyncio.Lock()
        self._form: MutableMapping[str, list[str]] | None = None
        self._query_params: MutableMapping[str, list[str]] | None = None
        self.user = user

    @staticmethod
    def _parse_pairs(raw: str) -> MutableMapping[str, list[str]]:
        parsed: MutableMapping[str, list[str]] = {}
        for key, value in parse_qsl(raw, keep_blank_values=True, max_num_fields=_MAX_FORM_FIELDS):
            parsed.setdefault(key, []).append(value)
        return parsed

    @property
    def query_params(self) -> MutableMapping[str, list[str]]:
        if self._query_params is None:
            self._query_params = self._parse_pairs(self._raw_query)
        return self._query_params

    @property
    def host(self) -> str | None:
        return self.header("host")

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    def query_value(self, name: str) -> str | None:
        values = self.query_params.get(name)
        return values[-1] if values else None

    async def body(self) -> bytes:
        if self._body is None:
            async with self._body_lock:
                if self._body is None:
                    raw = await self._body_loader() if self._body_loader is not None else None
                    self._body = bytes(raw) if raw is not None else b""
                    self._body_loader = None
        return self._body

    async def form(self) -> MutableMapping[str, list[str]]:
        """Decode an ``application/x-www-form-urlencoded`` body."""

        if self._form is None:
            content_type = (self.header("content-type") or "").split(";", 1)[0].strip().lower()
            if self.method != "POST" or content_type not in ("", _FORM_CONTENT_TYPE):
                self._form = {}
            else:
                self._form = self._parse_pairs((await self.body()).decode())
        return self._form

    async def form_value(self, name: str) -> str | None:
        values = (await self.form()).get(name)
        return values[-1] if values else None
