from __future__ import annotations

import pytest

from tenantsaml.requests import Request


@pytest.mark.asyncio
async def test_form_values_are_decoded_from_post_body() -> None:
    request = Request(
        method="post",
        path="/acs",
        headers={"Content-Type": "application/x-www-form-urlencoded; charset=utf-8", "Host": "sp.example.com"},
        body=b"SAMLResponse=abc%2B%2F%3D&RelayState=one&RelayState=two",
    )
    assert request.method == "POST"
    assert request.host == "sp.example.com"
    assert await request.form_value("SAMLResponse") == "abc+/="
    assert await request.form_value("RelayState") == "two"
    assert await request.form_value("missing") is None


@pytest.mark.asyncio
async def test_form_is_empty_for_get_and_other_content_types() -> None:
    get_request = Request(method="GET", path="/login", query_string="RelayState=%2Fhome")
    assert await get_request.form() == {}
    assert get_request.query_value("RelayState") == "/home"
    json_request = Request(
        method="POST",
        path="/acs",
        headers={"content-type": "application/json"},
        body=b'{"SAMLResponse": "x"}',
    )
    assert await json_request.form() == {}


@pytest.mark.asyncio
async def test_body_loader_is_called_once() -> None:
    calls = {"count": 0}

    async def loader() -> bytes:
        calls["count"] += 1
        return b"SAMLRequest=xyz"

    request = Request(method="POST", path="/acs", body_loader=loader)
    assert await request.form_value("SAMLRequest") == "xyz"
    assert await request.body() == b"SAMLRequest=xyz"
    assert calls["count"] == 1


def test_body_and_loader_are_exclusive() -> None:
    async def loader() -> bytes:  # pragma: no cover - never awaited
        return b""

    with pytest.raises(ValueError):
        Request(method="POST", path="/", body=b"x", body_loader=loader)
