"""Minimal multi-tenant SAML wiring.

Run ``uv run example.py`` to print the identity provider redirect that each
configured tenant would receive. Tenants are served from hosts like
``acme.demo.local.test``; override ``TENANTSAML_SITE`` or ``TENANTSAML_DOMAIN``
to match your environment.
"""

from __future__ import annotations

import asyncio
import logging
import os

from tenantsaml import MultiSamlStrategy, Profile, Request, SamlOptions, TenantOptionsRegistry, TenantResolver

EXAMPLE_CERT = "MIIBExampleCertificatePlaceholder"


def create_strategy() -> MultiSamlStrategy:
    """Build one strategy serving two tenants with their own identity providers."""

    site = os.getenv("TENANTSAML_SITE", "demo")
    domain = os.getenv("TENANTSAML_DOMAIN", "local.test")
    registry = TenantOptionsRegistry(
        {
            "acme": {
                "entry_point": "https://idp.acme.example/sso",
                "entity_id": f"https://acme.{site}.{domain}/saml",
                "cert": EXAMPLE_CERT,
            },
            "beta": {
                "entry_point": "https://login.beta.example/saml2",
                "entity_id": f"https://beta.{site}.{domain}/saml",
                "cert": EXAMPLE_CERT,
                "authn_request_binding": "HTTP-POST",
            },
        },
        resolver=TenantResolver(site=site, domain=domain, allowed_tenants=("acme", "beta")),
    )

    def verify(profile: Profile) -> dict[str, str]:
        return {"id": profile.name_id, "issuer": profile.issuer or ""}

    return MultiSamlStrategy(SamlOptions(validate_in_response_to=True), verify, resolver=registry)


async def main() -> None:
    strategy = create_strategy()
    site = os.getenv("TENANTSAML_SITE", "demo")
    domain = os.getenv("TENANTSAML_DOMAIN", "local.test")
    for tenant in ("acme", "beta", "gamma"):
        request = Request(method="GET", path="/saml/login", headers={"host": f"{tenant}.{site}.{domain}"})
        outcome = await strategy.authenticate(request)
        print(tenant, outcome.action, outcome.location or outcome.error or "<html form>")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
