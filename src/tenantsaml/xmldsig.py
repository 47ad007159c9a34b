"""XML signature helpers for SAML messages."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Callable, Iterable
from urllib.parse import urlencode

import lxml.etree as LET
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, padding, rsa
from cryptography.hazmat.primitives.serialization import load_der_public_key, load_pem_private_key, load_pem_public_key

from .exceptions import AuthenticationError, ConfigurationError

__all__ = [
    "DS_NS",
    "certificate_body",
    "load_public_key",
    "sign_redirect_query",
    "verify_signed_element",
]

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
_EXC_C14N_NS = "http://www.w3.org/2001/10/xml-exc-c14n#"
_ENVELOPED_SIGNATURE = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"


@dataclass(frozen=True)
class _C14N:
    exclusive: bool
    with_comments: bool


_C14N_METHODS: dict[str, _C14N] = {
    "http://www.w3.org/2001/10/xml-exc-c14n#": _C14N(exclusive=True, with_comments=False),
    "http://www.w3.org/2001/10/xml-exc-c14n#WithComments": _C14N(exclusive=True, with_comments=True),
    "http://www.w3.org/TR/2001/REC-xml-c14n-20010315": _C14N(exclusive=False, with_comments=False),
    "http://www.w3.org/TR/2001/REC-xml-c14n-20010315#WithComments": _C14N(exclusive=False, with_comments=True),
    "http://www.w3.org/2006/12/xml-c14n11": _C14N(exclusive=False, with_comments=False),
    "http://www.w3.org/2006/12/xml-c14n11#WithComments": _C14N(exclusive=False, with_comments=True),
}

_DIGESTS: dict[str, Callable[[bytes], Any]] = {
    "http://www.w3.org/2000/09/xmldsig#sha1": hashlib.sha1,
    "http://www.w3.org/2001/04/xmlenc#sha256": hashlib.sha256,
    "http://www.w3.org/2001/04/xmlenc#sha512": hashlib.sha512,
}

_RSA_HASHES: dict[str, hashes.HashAlgorithm] = {
    "http://www.w3.org/2000/09/xmldsig#rsa-sha1": hashes.SHA1(),
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256": hashes.SHA256(),
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512": hashes.SHA512(),
}

_ECDSA_HASHES: dict[str, hashes.HashAlgorithm] = {
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256": hashes.SHA256(),
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha512": hashes.SHA512(),
}

_EDDSA_METHODS: dict[str, type[Any]] = {
    "http://www.w3.org/2001/04/xmldsig-more#ed25519": ed25519.Ed25519PublicKey,
    "http://www.w3.org/2001/04/xmldsig-more#ed448": ed448.Ed448PublicKey,
}

REDIRECT_SIGNATURE_ALGORITHMS: dict[str, tuple[str, hashes.HashAlgorithm]] = {
    "sha1": ("http://www.w3.org/2000/09/xmldsig#rsa-sha1", hashes.SHA1()),
    "sha256": ("http://www.w3.org/2001/04/xmldsig-more#rsa-sha256", hashes.SHA256()),
    "sha512": ("http://www.w3.org/2001/04/xmldsig-more#rsa-sha512", hashes.SHA512()),
}


def verify_signed_element(element: LET._Element, certificates: Iterable[str]) -> None:
    """Check the enveloped signature that ``element`` carries as a direct child.

    The signature must reference ``element`` by its ``ID`` and validate against at
    least one of ``certificates``. Raises :class:`AuthenticationError` otherwise.
    """

    signature = element.find(f"{{{DS_NS}}}Signature")
    if signature is None:
        raise AuthenticationError("missing_signature")
    signed_info = signature.find(f"{{{DS_NS}}}SignedInfo")
    if signed_info is None:
        raise AuthenticationError("invalid_signature")
    references = signed_info.findall(f"{{{DS_NS}}}Reference")
    if len(references) != 1:
        raise AuthenticationError("invalid_signature")
    reference = references[0]
    element_id = element.get("ID")
    if not element_id or reference.get("URI") != f"#{element_id}":
        raise AuthenticationError("invalid_signature_reference")
    _check_digest(element, reference)
    signature_value = signature.findtext(f"{{{DS_NS}}}SignatureValue")
    if not signature_value:
        raise AuthenticationError("invalid_signature")
    try:
        signature_bytes = base64.b64decode("".join(signature_value.split()), validate=True)
    except (ValueError, binascii.Error) as exc:
        raise AuthenticationError("invalid_signature") from exc
    payload = _canonical_signed_info(signed_info)
    algorithm = _algorithm_of(signed_info.find(f"{{{DS_NS}}}SignatureMethod"))
    keys = [_public_key_or_none(certificate) for certificate in certificates]
    for key in keys:
        if key is not None and _signature_matches(key, algorithm, signature_bytes, payload):
            return
    raise AuthenticationError("invalid_signature")


def load_public_key(certificate: str) -> Any:
    """Load a public key from a PEM/base64 X.509 certificate or bare public key."""

    material = certificate.strip()
    if not material:
        raise ValueError("empty certificate")
    if "-----BEGIN" not in material:
        material = _wrap_pem(material, "CERTIFICATE")
    try:
        return x509.load_pem_x509_certificate(material.encode()).public_key()
    except ValueError:
        pass
    try:
        return load_pem_public_key(material.encode())
    except (ValueError, UnsupportedAlgorithm):
        pass
    try:
        return load_der_public_key(base64.b64decode(certificate_body(material), validate=True))
    except (ValueError, binascii.Error, UnsupportedAlgorithm) as exc:
        raise ValueError("unsupported_certificate_format") from exc


def certificate_body(certificate: str) -> str:
    """Return the base64 payload of a PEM certificate without armour or whitespace."""

    lines = [line.strip() for line in certificate.strip().splitlines()]
    return "".join(line for line in lines if line and not line.startswith("-----"))


def sign_redirect_query(params: list[tuple[str, str]], private_key: str, algorithm: str) -> list[tuple[str, str]]:
    """Sign HTTP-Redirect binding parameters.

    ``params`` holds the message and optional ``RelayState`` in wire order; the
    result appends ``SigAlg`` and ``Signature``.
    """

    try:
        sig_alg, digest = REDIRECT_SIGNATURE_ALGORITHMS[algorithm]
    except KeyError as exc:
        raise ConfigurationError(f"Unsupported signature algorithm: {algorithm}") from exc
    material = private_key.strip()
    if "-----BEGIN" not in material:
        material = _wrap_pem(material, "PRIVATE KEY")
    try:
        key = load_pem_private_key(material.encode(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ConfigurationError("private_key is not a usable PEM private key") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ConfigurationError("private_key must be an RSA key")
    signed = [*params, ("SigAlg", sig_alg)]
    signature = key.sign(urlencode(signed).encode(), padding.PKCS1v15(), digest)
    return [*signed, ("Signature", base64.b64encode(signature).decode())]


def _check_digest(element: LET._Element, reference: LET._Element) -> None:
    target = LET.fromstring(LET.tostring(element))
    data: bytes | None = None
    transforms = reference.find(f"{{{DS_NS}}}Transforms")
    for transform in transforms.findall(f"{{{DS_NS}}}Transform") if transforms is not None else ():
        algorithm = transform.get("Algorithm") or ""
        if algorithm == _ENVELOPED_SIGNATURE:
            for signature in target.findall(f"{{{DS_NS}}}Signature"):
                target.remove(signature)
        elif algorithm in _C14N_METHODS:
            data = _canonicalize(target, algorithm, _inclusive_prefixes(transform))
        else:
            raise AuthenticationError("unsupported_transform")
    if data is None:
        data = LET.tostring(target, method="c14n", exclusive=False, with_comments=False)
    digest_method = _algorithm_of(reference.find(f"{{{DS_NS}}}DigestMethod"))
    factory = _DIGESTS.get(digest_method)
    if factory is None:
        raise AuthenticationError("unsupported_digest")
    expected = base64.b64encode(factory(data).digest()).decode()
    actual = "".join((reference.findtext(f"{{{DS_NS}}}DigestValue") or "").split())
    if not hmac.compare_digest(expected, actual):
        raise AuthenticationError("invalid_digest")


def _canonical_signed_info(signed_info: LET._Element) -> bytes:
    method = signed_info.find(f"{{{DS_NS}}}CanonicalizationMethod")
    if method is None:
        raise AuthenticationError("invalid_signature")
    algorithm = _algorithm_of(method)
    if algorithm not in _C14N_METHODS:
        raise AuthenticationError("invalid_signature")
    return _canonicalize(signed_info, algorithm, _inclusive_prefixes(method))


def _canonicalize(element: LET._Element, algorithm: str, prefixes: list[str] | None) -> bytes:
    config = _C14N_METHODS[algorithm]
    return LET.tostring(
        element,
        method="c14n",
        exclusive=config.exclusive,
        with_comments=config.with_comments,
        inclusive_ns_prefixes=prefixes if config.exclusive else None,
    )


def _inclusive_prefixes(node: LET._Element) -> list[str] | None:
    inclusive = node.find(f"{{{_EXC_C14N_NS}}}InclusiveNamespaces")
    if inclusive is None:
        return None
    return (inclusive.get("PrefixList") or "").split() or None


def _algorithm_of(node: LET._Element | None) -> str:
    algorithm = node.get("Algorithm") if node is not None else None
    if not algorithm:
        raise AuthenticationError("invalid_signature")
    return algorithm


def _signature_matches(key: Any, algorithm: str, signature: bytes, payload: bytes) -> bool:
    try:
        if algorithm in _RSA_HASHES and isinstance(key, rsa.RSAPublicKey):
            key.verify(signature, payload, padding.PKCS1v15(), _RSA_HASHES[algorithm])
        elif algorithm in _ECDSA_HASHES and isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(signature, payload, ec.ECDSA(_ECDSA_HASHES[algorithm]))
        elif algorithm in _EDDSA_METHODS and isinstance(key, _EDDSA_METHODS[algorithm]):
            key.verify(signature, payload)
        else:
            return False
    except InvalidSignature:
        return False
    return True


def _public_key_or_none(certificate: str) -> Any | None:
    try:
        return load_public_key(certificate)
    except ValueError:
        return None


def _wrap_pem(body: str, label: str) -> str:
    compact = "".join(body.split())
    lines = [compact[index : index + 64] for index in range(0, len(compact), 64)]
    return "\n".join([f"-----BEGIN {label}-----", *lines, f"-----END {label}-----"])
