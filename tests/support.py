"""Test support utilities: an in-process identity provider and request builders."""

from __future__ import annotations

import base64
import datetime as dt
import hashlib
import secrets
import zlib
from typing import Any, Iterable, Mapping
from urllib.parse import parse_qs, urlencode, urlsplit

import lxml.etree as LET
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from tenantsaml.config import SamlOptions
from tenantsaml.requests import Request
from tenantsaml.saml import SAML
from tenantsaml.tenancy import TenantContext

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
PROTOCOL_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
ASSERTION_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
_EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
_ENVELOPED_SIG = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
_DIGEST_SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"
_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"


def saml_instant(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def generate_signing_material(common_name: str = "Test IdP") -> tuple[rsa.RSAPrivateKey, str]:
    now = dt.datetime.now(dt.timezone.utc)
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(days=1))
        .not_valid_after(now + dt.timedelta(days=1))
        .sign(private_key, hashes.SHA256())
    )
    return private_key, certificate.public_bytes(serialization.Encoding.PEM).decode()


def private_key_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


def sign_element(element: LET._Element, key: rsa.RSAPrivateKey) -> None:
    """Attach an enveloped RSA-SHA256 signature to ``element`` after its Issuer."""

    digest_bytes = LET.tostring(element, method="c14n", exclusive=True, with_comments=False)
    digest_value = base64.b64encode(hashlib.sha256(digest_bytes).digest()).decode()

    signature = LET.Element(f"{{{DS_NS}}}Signature", nsmap={"ds": DS_NS})
    signed_info = LET.SubElement(signature, f"{{{DS_NS}}}SignedInfo")
    LET.SubElement(signed_info, f"{{{DS_NS}}}CanonicalizationMethod", Algorithm=_EXC_C14N)
    LET.SubElement(signed_info, f"{{{DS_NS}}}SignatureMethod", Algorithm=_RSA_SHA256)
    reference = LET.SubElement(signed_info, f"{{{DS_NS}}}Reference", URI=f"#{element.get('ID')}")
    transforms = LET.SubElement(reference, f"{{{DS_NS}}}Transforms")
    LET.SubElement(transforms, f"{{{DS_NS}}}Transform", Algorithm=_ENVELOPED_SIG)
    LET.SubElement(transforms, f"{{{DS_NS}}}Transform", Algorithm=_EXC_C14N)
    LET.SubElement(reference, f"{{{DS_NS}}}DigestMethod", Algorithm=_DIGEST_SHA256)
    LET.SubElement(reference, f"{{{DS_NS}}}DigestValue").text = digest_value

    payload = LET.tostring(signed_info, method="c14n", exclusive=True, with_comments=False)
    signature_bytes = key.sign(payload, padding.PKCS1v15(), hashes.SHA256())
    LET.SubElement(signature, f"{{{DS_NS}}}SignatureValue").text = base64.b64encode(signature_bytes).decode()

    issuer = element.find(f"{{{ASSERTION_NS}}}Issuer")
    element.insert(element.index(issuer) + 1 if issuer is not None else 0, signature)


def _new_id() -> str:
    return f"_{secrets.token_hex(12)}"


def _protocol_root(name: str, *, issuer: str, in_response_to: str | None = None) -> LET._Element:
    root = LET.Element(
        f"{{{PROTOCOL_NS}}}{name}",
        nsmap={"samlp": PROTOCOL_NS, "saml": ASSERTION_NS},
        ID=_new_id(),
        Version="2.0",
        IssueInstant=saml_instant(dt.datetime.now(dt.timezone.utc)),
    )
    if in_response_to:
        root.set("InResponseTo", in_response_to)
    LET.SubElement(root, f"{{{ASSERTION_NS}}}Issuer").text = issuer
    return root


def _status(root: LET._Element, code: str) -> None:
    status = LET.SubElement(root, f"{{{PROTOCOL_NS}}}Status")
    LET.SubElement(status, f"{{{PROTOCOL_NS}}}StatusCode", Value=code)


def build_assertion(
    *,
    issuer: str,
    name_id: str,
    audience: str | None = None,
    in_response_to: str | None = None,
    attributes: Mapping[str, str | Iterable[str]] | None = None,
    session_index: str = "_session-1",
    now: dt.datetime | None = None,
    lifetime: dt.timedelta = dt.timedelta(minutes=5),
) -> LET._Element:
    now = now or dt.datetime.now(dt.timezone.utc)
    assertion = LET.Element(
        f"{{{ASSERTION_NS}}}Assertion",
        nsmap={"saml": ASSERTION_NS},
        ID=_new_id(),
        Version="2.0",
        IssueInstant=saml_instant(now),
    )
    LET.SubElement(assertion, f"{{{ASSERTION_NS}}}Issuer").text = issuer
    subject = LET.SubElement(assertion, f"{{{ASSERTION_NS}}}Subject")
    name = LET.SubElement(
        subject,
        f"{{{ASSERTION_NS}}}NameID",
        Format="urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress",
    )
    name.text = name_id
    confirmation = LET.SubElement(
        subject,
        f"{{{ASSERTION_NS}}}SubjectConfirmation",
        Method="urn:oasis:names:tc:SAML:2.0:cm:bearer",
    )
    data = LET.SubElement(
        confirmation,
        f"{{{ASSERTION_NS}}}SubjectConfirmationData",
        NotOnOrAfter=saml_instant(now + lifetime),
    )
    if in_response_to:
        data.set("InResponseTo", in_response_to)
    conditions = LET.SubElement(
        assertion,
        f"{{{ASSERTION_NS}}}Conditions",
        NotBefore=saml_instant(now - dt.timedelta(minutes=1)),
        NotOnOrAfter=saml_instant(now + lifetime),
    )
    if audience:
        restriction = LET.SubElement(conditions, f"{{{ASSERTION_NS}}}AudienceRestriction")
        LET.SubElement(restriction, f"{{{ASSERTION_NS}}}Audience").text = audience
    LET.SubElement(
        assertion,
        f"{{{ASSERTION_NS}}}AuthnStatement",
        AuthnInstant=saml_instant(now),
        SessionIndex=session_index,
    )
    if attributes:
        statement = LET.SubElement(assertion, f"{{{ASSERTION_NS}}}AttributeStatement")
        for attribute_name, value in attributes.items():
            attribute = LET.SubElement(statement, f"{{{ASSERTION_NS}}}Attribute", Name=attribute_name)
            for item in [value] if isinstance(value, str) else value:
                LET.SubElement(attribute, f"{{{ASSERTION_NS}}}AttributeValue").text = item
    return assertion


def build_response(
    key: rsa.RSAPrivateKey | None,
    *,
    issuer: str = "https://idp.example.com",
    name_id: str = "user@example.com",
    sign_assertion: bool = True,
    sign_response: bool = False,
    status: str = STATUS_SUCCESS,
    in_response_to: str | None = None,
    **assertion_fields: Any,
) -> str:
    """Return a base64 ``Response`` as an identity provider would post it."""

    root = _protocol_root("Response", issuer=issuer, in_response_to=in_response_to)
    _status(root, status)
    assertion = build_assertion(issuer=issuer, name_id=name_id, in_response_to=in_response_to, **assertion_fields)
    if sign_assertion and key is not None:
        sign_element(assertion, key)
    root.append(assertion)
    if sign_response and key is not None:
        sign_element(root, key)
    return encode(root)


def build_logout_request(
    key: rsa.RSAPrivateKey,
    *,
    issuer: str = "https://idp.example.com",
    name_id: str = "user@example.com",
    session_index: str = "_session-1",
) -> tuple[str, str]:
    root = _protocol_root("LogoutRequest", issuer=issuer)
    LET.SubElement(root, f"{{{ASSERTION_NS}}}NameID").text = name_id
    LET.SubElement(root, f"{{{PROTOCOL_NS}}}SessionIndex").text = session_index
    sign_element(root, key)
    return root.get("ID"), encode(root)


def build_logout_response(
    key: rsa.RSAPrivateKey,
    *,
    issuer: str = "https://idp.example.com",
    in_response_to: str | None = None,
    status: str = STATUS_SUCCESS,
) -> str:
    root = _protocol_root("LogoutResponse", issuer=issuer, in_response_to=in_response_to)
    _status(root, status)
    sign_element(root, key)
    return encode(root)


def encode(element: LET._Element) -> str:
    return base64.b64encode(LET.tostring(element)).decode()


def decode_redirect(location: str, key: str = "SAMLRequest") -> tuple[LET._Element, dict[str, list[str]]]:
    """Inflate the SAML message carried by a redirect-binding URL."""

    query = parse_qs(urlsplit(location).query)
    raw = zlib.decompress(base64.b64decode(query[key][0]), -15)
    return LET.fromstring(raw), query


def make_request(
    *,
    method: str = "GET",
    path: str = "/login",
    form: Mapping[str, str] | None = None,
    headers: Mapping[str, str] | None = None,
    tenant: str | None = None,
    user: Any = None,
    query: Mapping[str, str] | None = None,
) -> Request:
    request_headers = {"host": "sp.example.com", **(headers or {})}
    body = None
    if form is not None:
        method = "POST"
        body = urlencode(form).encode()
        request_headers.setdefault("content-type", "application/x-www-form-urlencoded")
    context = TenantContext(tenant=tenant, site="demo", domain="example.com") if tenant else None
    return Request(
        method=method,
        path=path,
        headers=request_headers,
        tenant=context,
        query_string=urlencode(query or {}),
        body=body,
        user=user,
    )


class RecordingEngineFactory:
    """Engine factory that counts constructions and keeps the engines it built."""

    def __init__(self) -> None:
        self.calls = 0
        self.engines: list[SAML] = []

    def __call__(self, options: SamlOptions) -> SAML:
        self.calls += 1
        engine = SAML(options)
        self.engines.append(engine)
        return engine


__all__ = [
    "RecordingEngineFactory",
    "build_assertion",
    "build_logout_request",
    "build_logout_response",
    "build_response",
    "decode_redirect",
    "encode",
    "generate_signing_material",
    "make_request",
    "private_key_pem",
    "saml_instant",
    "sign_element",
]
