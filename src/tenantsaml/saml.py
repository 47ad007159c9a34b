"""SAML 2.0 protocol engine.

:class:`SAML` is the default engine behind both strategies. It builds
``AuthnRequest`` / ``LogoutRequest`` / ``LogoutResponse`` messages for the
HTTP-Redirect and HTTP-POST bindings, validates signed ``Response``,
``LogoutResponse`` and ``LogoutRequest`` documents posted back by the identity
provider, and renders service provider metadata. An engine is bound to one
:class:`~tenantsaml.config.SamlOptions` value for its whole lifetime.
"""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import html
import logging
import secrets
import zlib
from typing import TYPE_CHECKING, Callable, Mapping, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import lxml.etree as LET
import msgspec
from msgspec import Struct

from .cache import InMemoryCacheProvider
from .config import DEFAULT_REQUEST_ID_EXPIRATION_PERIOD_MS, SamlOptions
from .exceptions import AuthenticationError, ConfigurationError
from .xmldsig import DS_NS, certificate_body, sign_redirect_query, verify_signed_element

if TYPE_CHECKING:
    from .requests import Request

__all__ = ["SAML", "Profile", "SamlEngine"]

logger = logging.getLogger(__name__)

PROTOCOL_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
ASSERTION_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
METADATA_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
HTTP_POST_BINDING = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
HTTP_REDIRECT_BINDING = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"

_NSMAP = {"samlp": PROTOCOL_NS, "saml": ASSERTION_NS}
_PARSER = LET.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


class Profile(Struct, frozen=True, kw_only=True):
    """Identity asserted by the identity provider."""

    name_id: str
    issuer: str | None = None
    name_id_format: str | None = None
    name_qualifier: str | None = None
    sp_name_qualifier: str | None = None
    session_index: str | None = None
    id: str | None = None
    in_response_to: str | None = None
    attributes: dict[str, str | list[str]] = msgspec.field(default_factory=dict)
    assertion_xml: str | None = None


class SamlEngine(Protocol):
    """Operations the strategies need from a protocol engine."""

    options: SamlOptions

    async def authorize_url(self, request: "Request", *, relay_state: str | None = None) -> str: ...

    async def authorize_form(self, request: "Request", *, relay_state: str | None = None) -> str: ...

    async def logout_url(self, user: Profile, *, relay_state: str | None = None) -> str: ...

    async def logout_response_url(self, profile: Profile, *, relay_state: str | None = None) -> str: ...

    async def validate_post_response(self, encoded: str) -> tuple[Profile | None, bool]: ...

    async def validate_post_request(self, encoded: str) -> Profile: ...

    def generate_service_provider_metadata(
        self,
        decryption_cert: str | None = None,
        signing_cert: str | None = None,
    ) -> str: ...


class SAML:
    """Default :class:`SamlEngine` implementation."""

    def __init__(
        self,
        options: SamlOptions,
        *,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        if not options.certificates:
            raise ConfigurationError("cert is required")
        if not options.entity_id:
            raise ConfigurationError("entity_id is required")
        self.options = options
        # Stores may define __len__, so an empty shared store is still the store to use.
        if options.cache_provider is not None:
            self.cache = options.cache_provider
        else:
            self.cache = InMemoryCacheProvider(
                key_expiration_period_ms=options.request_id_expiration_period_ms
                or DEFAULT_REQUEST_ID_EXPIRATION_PERIOD_MS
            )
        self._clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))

    @property
    def entity_id(self) -> str:
        return self.options.entity_id

    # Outbound messages

    async def authorize_url(self, request: "Request", *, relay_state: str | None = None) -> str:
        message_id, document = await self._authn_request(request)
        target = self._require(self.options.entry_point, "entry_point")
        params = {**self.options.additional_params, **self.options.additional_authorize_params}
        logger.debug("Issuing AuthnRequest %s for %s", message_id, self.options.entity_id)
        return self._redirect_url(target, "SAMLRequest", document, relay_state=relay_state, extra=params)

    async def authorize_form(self, request: "Request", *, relay_state: str | None = None) -> str:
        _, document = await self._authn_request(request)
        target = self._require(self.options.entry_point, "entry_point")
        fields = {"SAMLRequest": base64.b64encode(document).decode()}
        if relay_state:
            fields["RelayState"] = relay_state
        fields.update(self.options.additional_params)
        fields.update(self.options.additional_authorize_params)
        inputs = "".join(
            f'<input type="hidden" name="{html.escape(name)}" value="{html.escape(value)}"/>'
            for name, value in fields.items()
        )
        return (
            "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
            "<body onload=\"document.forms[0].submit()\">"
            f"<form method=\"post\" action=\"{html.escape(target)}\">{inputs}"
            "<noscript><input type=\"submit\" value=\"Continue\"/></noscript>"
            "</form></body></html>"
        )

    async def logout_url(self, user: Profile, *, relay_state: str | None = None) -> str:
        target = self._require(self.options.logout_url or self.options.entry_point, "logout_url")
        message_id = _new_id()
        root = self._message("LogoutRequest", message_id, destination=target)
        name_id = LET.SubElement(root, f"{{{ASSERTION_NS}}}NameID")
        name_id.text = user.name_id
        if user.name_id_format:
            name_id.set("Format", user.name_id_format)
        if user.name_qualifier:
            name_id.set("NameQualifier", user.name_qualifier)
        if user.sp_name_qualifier:
            name_id.set("SPNameQualifier", user.sp_name_qualifier)
        if user.session_index:
            LET.SubElement(root, f"{{{PROTOCOL_NS}}}SessionIndex").text = user.session_index
        await self._remember(message_id)
        params = {**self.options.additional_params, **self.options.additional_logout_params}
        return self._redirect_url(target, "SAMLRequest", LET.tostring(root), relay_state=relay_state, extra=params)

    async def logout_response_url(self, profile: Profile, *, relay_state: str | None = None) -> str:
        target = self._require(self.options.logout_url or self.options.entry_point, "logout_url")
        root = self._message("LogoutResponse", _new_id(), destination=target)
        if profile.id:
            root.set("InResponseTo", profile.id)
        status = LET.SubElement(root, f"{{{PROTOCOL_NS}}}Status")
        LET.SubElement(status, f"{{{PROTOCOL_NS}}}StatusCode", Value=STATUS_SUCCESS)
        params = {**self.options.additional_params, **self.options.additional_logout_params}
        return self._redirect_url(target, "SAMLResponse", LET.tostring(root), relay_state=relay_state, extra=params)

    # Inbound messages

    async def validate_post_response(self, encoded: str) -> tuple[Profile | None, bool]:
        raw = _decode_message(encoded)
        document = _parse(raw)
        name = LET.QName(document).localname
        if name == "LogoutResponse":
            await self._validate_logout_response(document)
            return None, True
        if name != "Response" or LET.QName(document).namespace != PROTOCOL_NS:
            raise AuthenticationError("unexpected_message")
        if document.find(f"{{{ASSERTION_NS}}}EncryptedAssertion") is not None:
            raise AuthenticationError("encrypted_assertion_unsupported")
        _check_status(document)
        assertions = document.findall(f"{{{ASSERTION_NS}}}Assertion")
        if len(assertions) != 1:
            raise AuthenticationError("invalid_assertion_count")
        assertion = assertions[0]
        response_signed = document.find(f"{{{DS_NS}}}Signature") is not None
        if response_signed:
            verify_signed_element(document, self.options.certificates)
        if assertion.find(f"{{{DS_NS}}}Signature") is not None:
            verify_signed_element(assertion, self.options.certificates)
        elif not response_signed:
            raise AuthenticationError("missing_signature")
        in_response_to = document.get("InResponseTo")
        await self._consume(in_response_to)
        self._check_issuer(assertion)
        now = self._clock()
        self._check_conditions(assertion, now)
        self._check_subject_confirmation(assertion, now, in_response_to)
        return self._profile_from_assertion(assertion, in_response_to), False

    async def validate_post_request(self, encoded: str) -> Profile:
        document = _parse(_decode_message(encoded))
        if LET.QName(document).localname != "LogoutRequest":
            raise AuthenticationError("unexpected_message")
        verify_signed_element(document, self.options.certificates)
        self._check_issuer(document)
        self._check_window(document.get("NotOnOrAfter"), None, self._clock(), "logout_request")
        name_id = document.find(f"{{{ASSERTION_NS}}}NameID")
        if name_id is None or not _text(name_id):
            raise AuthenticationError("missing_subject")
        return Profile(
            id=document.get("ID"),
            issuer=_text(document.find(f"{{{ASSERTION_NS}}}Issuer")) or None,
            name_id=_text(name_id),
            name_id_format=name_id.get("Format"),
            name_qualifier=name_id.get("NameQualifier"),
            sp_name_qualifier=name_id.get("SPNameQualifier"),
            session_index=_text(document.find(f"{{{PROTOCOL_NS}}}SessionIndex")) or None,
        )

    # Metadata

    def generate_service_provider_metadata(
        self,
        decryption_cert: str | None = None,
        signing_cert: str | None = None,
    ) -> str:
        callback_url = self.options.callback_url
        if not callback_url:
            raise ConfigurationError("Unable to generate service provider metadata when callback_url is not set")
        if signing_cert and not self.options.private_key:
            raise ConfigurationError("private_key is required to advertise a signing certificate")
        root = LET.Element(
            f"{{{METADATA_NS}}}EntityDescriptor",
            nsmap={None: METADATA_NS, "ds": DS_NS},
            entityID=self.options.entity_id,
            ID=_xml_id(self.options.entity_id),
        )
        descriptor = LET.SubElement(
            root,
            f"{{{METADATA_NS}}}SPSSODescriptor",
            protocolSupportEnumeration=PROTOCOL_NS,
        )
        if signing_cert:
            descriptor.set("AuthnRequestsSigned", "true")
            _key_descriptor(descriptor, "signing", signing_cert)
        if decryption_cert:
            encryption = _key_descriptor(descriptor, "encryption", decryption_cert)
            for algorithm in (
                "http://www.w3.org/2009/xmlenc11#aes256-gcm",
                "http://www.w3.org/2009/xmlenc11#aes128-gcm",
                "http://www.w3.org/2001/04/xmlenc#aes256-cbc",
                "http://www.w3.org/2001/04/xmlenc#aes128-cbc",
            ):
                LET.SubElement(encryption, f"{{{METADATA_NS}}}EncryptionMethod", Algorithm=algorithm)
        if self.options.logout_callback_url:
            LET.SubElement(
                descriptor,
                f"{{{METADATA_NS}}}SingleLogoutService",
                Binding=HTTP_POST_BINDING,
                Location=self.options.logout_callback_url,
            )
        if self.options.identifier_format:
            LET.SubElement(descriptor, f"{{{METADATA_NS}}}NameIDFormat").text = self.options.identifier_format
        LET.SubElement(
            descriptor,
            f"{{{METADATA_NS}}}AssertionConsumerService",
            index="1",
            isDefault="true",
            Binding=HTTP_POST_BINDING,
            Location=callback_url,
        )
        return LET.tostring(root, pretty_print=True, encoding="unicode")

    # Internals

    async def _authn_request(self, request: "Request") -> tuple[str, bytes]:
        message_id = _new_id()
        root = self._message("AuthnRequest", message_id, destination=self.options.entry_point)
        root.set("ProtocolBinding", HTTP_POST_BINDING)
        root.set("AssertionConsumerServiceURL", self._callback_url(request))
        if self.options.force_authn:
            root.set("ForceAuthn", "true")
        if self.options.passive:
            root.set("IsPassive", "true")
        if self.options.provider_name:
            root.set("ProviderName", self.options.provider_name)
        if self.options.identifier_format:
            LET.SubElement(
                root,
                f"{{{PROTOCOL_NS}}}NameIDPolicy",
                Format=self.options.identifier_format,
                AllowCreate="true",
            )
        if self.options.authn_context:
            requested = LET.SubElement(root, f"{{{PROTOCOL_NS}}}RequestedAuthnContext", Comparison="exact")
            for reference in self.options.authn_context:
                LET.SubElement(requested, f"{{{ASSERTION_NS}}}AuthnContextClassRef").text = reference
        await self._remember(message_id)
        return message_id, LET.tostring(root)

    def _message(self, name: str, message_id: str, *, destination: str | None) -> LET._Element:
        root = LET.Element(
            f"{{{PROTOCOL_NS}}}{name}",
            nsmap=_NSMAP,
            ID=message_id,
            Version="2.0",
            IssueInstant=_instant(self._clock()),
        )
        if destination:
            root.set("Destination", destination)
        LET.SubElement(root, f"{{{ASSERTION_NS}}}Issuer").text = self.options.entity_id
        return root

    def _redirect_url(
        self,
        target: str,
        key: str,
        document: bytes,
        *,
        relay_state: str | None,
        extra: Mapping[str, str],
    ) -> str:
        compressor = zlib.compressobj(wbits=-15)
        deflated = compressor.compress(document) + compressor.flush()
        signed: list[tuple[str, str]] = [(key, base64.b64encode(deflated).decode())]
        if relay_state:
            signed.append(("RelayState", relay_state))
        if self.options.private_key:
            signed = sign_redirect_query(signed, self.options.private_key, self.options.signature_algorithm)
        parts = urlsplit(target)
        query = [(name, value) for name, value in parse_qsl(parts.query, keep_blank_values=True)]
        query.extend(extra.items())
        query.extend(signed)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

    def _callback_url(self, request: "Request") -> str:
        if self.options.callback_url:
            return self.options.callback_url
        host = request.header("x-forwarded-host") or request.header("host")
        if not host:
            raise ConfigurationError("callback_url is required when the request carries no host")
        scheme = request.header("x-forwarded-proto") or "https"
        return f"{scheme}://{host}{request.path}"

    async def _remember(self, message_id: str) -> None:
        if not self.options.validate_in_response_to:
            return
        await self.cache.save(message_id, _instant(self._clock()))

    async def _consume(self, in_response_to: str | None) -> None:
        if not self.options.validate_in_response_to:
            return
        if not in_response_to:
            raise AuthenticationError("missing_in_response_to")
        # Removal decides: of two concurrent posts only one gets the key back.
        if await self.cache.get(in_response_to) is None or await self.cache.remove(in_response_to) is None:
            raise AuthenticationError("invalid_in_response_to")

    async def _validate_logout_response(self, document: LET._Element) -> None:
        verify_signed_element(document, self.options.certificates)
        _check_status(document)
        await self._consume(document.get("InResponseTo"))

    def _check_issuer(self, element: LET._Element) -> None:
        expected = self.options.idp_issuer
        if not expected:
            return
        if _text(element.find(f"{{{ASSERTION_NS}}}Issuer")) != expected:
            raise AuthenticationError("unknown_issuer")

    def _check_conditions(self, assertion: LET._Element, now: dt.datetime) -> None:
        conditions = assertion.find(f"{{{ASSERTION_NS}}}Conditions")
        if conditions is None:
            return
        self._check_window(conditions.get("NotOnOrAfter"), conditions.get("NotBefore"), now, "assertion")
        audience = self.options.audience
        if audience:
            audiences = {_text(node) for node in conditions.iterfind(f".//{{{ASSERTION_NS}}}Audience")}
            if audience not in audiences:
                raise AuthenticationError("invalid_audience")

    def _check_subject_confirmation(
        self,
        assertion: LET._Element,
        now: dt.datetime,
        in_response_to: str | None,
    ) -> None:
        for data in assertion.iterfind(
            f"{{{ASSERTION_NS}}}Subject/{{{ASSERTION_NS}}}SubjectConfirmation/{{{ASSERTION_NS}}}SubjectConfirmationData"
        ):
            self._check_window(data.get("NotOnOrAfter"), data.get("NotBefore"), now, "subject_confirmation")
            confirmed = data.get("InResponseTo")
            if self.options.validate_in_response_to and confirmed and confirmed != in_response_to:
                raise AuthenticationError("invalid_in_response_to")

    def _check_window(
        self,
        not_on_or_after: str | None,
        not_before: str | None,
        now: dt.datetime,
        label: str,
    ) -> None:
        if self.options.accepted_clock_skew_ms < 0:
            return
        skew = dt.timedelta(milliseconds=self.options.accepted_clock_skew_ms)
        if not_before and now + skew < _parse_instant(not_before):
            raise AuthenticationError(f"{label}_not_yet_valid")
        if not_on_or_after and now - skew >= _parse_instant(not_on_or_after):
            raise AuthenticationError(f"{label}_expired")

    def _profile_from_assertion(self, assertion: LET._Element, in_response_to: str | None) -> Profile:
        subject = assertion.find(f"{{{ASSERTION_NS}}}Subject/{{{ASSERTION_NS}}}NameID")
        if subject is None or not _text(subject):
            raise AuthenticationError("missing_subject")
        statement = assertion.find(f"{{{ASSERTION_NS}}}AuthnStatement")
        attributes: dict[str, str | list[str]] = {}
        for attribute in assertion.iterfind(f"{{{ASSERTION_NS}}}AttributeStatement/{{{ASSERTION_NS}}}Attribute"):
            name = attribute.get("Name")
            if not name:
                continue
            values = [_text(node) for node in attribute.iterfind(f"{{{ASSERTION_NS}}}AttributeValue")]
            key = self.options.attribute_mapping.get(name, name)
            attributes[key] = values[0] if len(values) == 1 else values
        return Profile(
            issuer=_text(assertion.find(f"{{{ASSERTION_NS}}}Issuer")) or None,
            name_id=_text(subject),
            name_id_format=subject.get("Format"),
            name_qualifier=subject.get("NameQualifier"),
            sp_name_qualifier=subject.get("SPNameQualifier"),
            session_index=statement.get("SessionIndex") if statement is not None else None,
            in_response_to=in_response_to,
            attributes=attributes,
            assertion_xml=LET.tostring(assertion, encoding="unicode"),
        )

    @staticmethod
    def _require(value: str | None, name: str) -> str:
        if not value:
            raise ConfigurationError(f"{name} is required")
        return value


def _key_descriptor(parent: LET._Element, use: str, certificate: str) -> LET._Element:
    descriptor = LET.SubElement(parent, f"{{{METADATA_NS}}}KeyDescriptor", use=use)
    key_info = LET.SubElement(descriptor, f"{{{DS_NS}}}KeyInfo")
    x509_data = LET.SubElement(key_info, f"{{{DS_NS}}}X509Data")
    LET.SubElement(x509_data, f"{{{DS_NS}}}X509Certificate").text = certificate_body(certificate)
    return descriptor


def _check_status(document: LET._Element) -> None:
    code = document.find(f"{{{PROTOCOL_NS}}}Status/{{{PROTOCOL_NS}}}StatusCode")
    value = code.get("Value") if code is not None else None
    if value == STATUS_SUCCESS:
        return
    nested = code.find(f"{{{PROTOCOL_NS}}}StatusCode") if code is not None else None
    detail = nested.get("Value") if nested is not None else value
    raise AuthenticationError(f"status_not_success:{detail or 'missing'}")


def _decode_message(encoded: str) -> bytes:
    try:
        return base64.b64decode("".join(encoded.split()), validate=True)
    except (ValueError, binascii.Error) as exc:
        raise AuthenticationError("invalid_encoding") from exc


def _parse(raw: bytes) -> LET._Element:
    try:
        return LET.fromstring(raw, parser=_PARSER)
    except LET.XMLSyntaxError as exc:
        raise AuthenticationError("invalid_document") from exc


def _text(node: LET._Element | None) -> str:
    if node is None:
        return ""
    return "".join(node.xpath("text()")).strip()


def _new_id() -> str:
    return f"_{secrets.token_hex(20)}"


def _xml_id(value: str) -> str:
    cleaned = "".join(char if char.isalnum() or char in "-._" else "_" for char in value)
    return cleaned if cleaned[:1].isalpha() or cleaned[:1] == "_" else f"_{cleaned}"


def _instant(moment: dt.datetime) -> str:
    return moment.astimezone(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_instant(value: str) -> dt.datetime:
    try:
        instant = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise AuthenticationError("invalid_timestamp") from exc
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=dt.timezone.utc)
    return instant
