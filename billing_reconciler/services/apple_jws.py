"""Verification of App Store signed payloads.

App Store Server Notifications and the transaction and renewal info inside
them are JWS tokens signed with ES256. The signing certificate travels in the
``x5c`` header together with its intermediate, and the chain must end at a
configured Apple root before any claim is trusted.
"""

from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from jose import jws
from jose.exceptions import JOSEError

from ..domain.errors import ConfigurationError, InvalidBillingRequestError, InvalidSignatureError

logger = logging.getLogger(__name__)

SIGNING_ALGORITHM = "ES256"

# Marker extensions Apple sets on App Store signing certificates.
LEAF_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")
INTERMEDIATE_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")


def load_root_certificates(path: Path) -> List[x509.Certificate]:
    """Load trusted roots from a DER (``.cer``) or PEM file."""
    try:
        data = path.read_bytes()
        if b"-----BEGIN CERTIFICATE-----" in data:
            return x509.load_pem_x509_certificates(data)
        return [x509.load_der_x509_certificate(data)]
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Unable to load App Store root certificate from {path}") from exc


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SignedPayloadVerifier:
    """Checks the ``x5c`` chain and ES256 signature of an App Store JWS."""

    def __init__(
        self,
        root_certificates: Sequence[x509.Certificate],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._roots = list(root_certificates)
        self._clock = clock

    def verify(self, token: str) -> Dict[str, Any]:
        """
        Return the claims of ``token`` once its signature is proven.

        Raises:
            InvalidBillingRequestError: The token cannot be parsed
            InvalidSignatureError: The chain or signature does not check out
        """
        try:
            header = jws.get_unverified_header(token)
        except JOSEError as exc:
            raise InvalidBillingRequestError("Invalid signed payload") from exc
        if header.get("alg") != SIGNING_ALGORITHM:
            raise InvalidSignatureError(f"Unsupported signing algorithm: {header.get('alg')}")

        chain = self._load_chain(header.get("x5c"))
        self._verify_chain(chain)
        leaf_key = chain[0].public_key().public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        try:
            payload = jws.verify(token, leaf_key, algorithms=[SIGNING_ALGORITHM])
        except JOSEError as exc:
            raise InvalidSignatureError("Signed payload signature is invalid") from exc

        try:
            claims = json.loads(payload)
        except ValueError as exc:
            raise InvalidBillingRequestError("Invalid signed payload") from exc
        if not isinstance(claims, dict):
            raise InvalidBillingRequestError("Invalid signed payload")
        return claims

    @staticmethod
    def _load_chain(x5c: Any) -> List[x509.Certificate]:
        if not isinstance(x5c, list) or len(x5c) < 2:
            raise InvalidSignatureError("Signed payload carries no certificate chain")
        try:
            return [x509.load_der_x509_certificate(base64.b64decode(item, validate=True)) for item in x5c]
        except (TypeError, ValueError) as exc:
            raise InvalidSignatureError("Signed payload certificate chain is malformed") from exc

    def _verify_chain(self, chain: List[x509.Certificate]) -> None:
        if not self._roots:
            logger.error("Rejecting App Store payload: no trusted root certificate is configured")
            raise InvalidSignatureError("No trusted App Store root certificate is configured")

        now = self._clock()
        for certificate in chain:
            if not certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc:
                raise InvalidSignatureError("Signed payload certificate is outside its validity period")
        self._require_marker(chain[0], LEAF_MARKER_OID)
        self._require_marker(chain[1], INTERMEDIATE_MARKER_OID)

        try:
            for certificate, issuer in zip(chain, chain[1:]):
                certificate.verify_directly_issued_by(issuer)
        except (TypeError, ValueError, InvalidSignature) as exc:
            raise InvalidSignatureError("Signed payload certificate chain is broken") from exc

        anchor = chain[-1]
        for root in self._roots:
            if anchor == root:
                return
            try:
                anchor.verify_directly_issued_by(root)
            except (TypeError, ValueError, InvalidSignature):
                continue
            return
        raise InvalidSignatureError("Signed payload is not anchored in a trusted root")

    @staticmethod
    def _require_marker(certificate: x509.Certificate, oid: x509.ObjectIdentifier) -> None:
        try:
            certificate.extensions.get_extension_for_oid(oid)
        except x509.ExtensionNotFound as exc:
            raise InvalidSignatureError(
                "Signed payload certificate is not an App Store signing certificate"
            ) from exc
