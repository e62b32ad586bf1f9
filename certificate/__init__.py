"""Certificate issuance, renewal, revocation and OCSP on top of `acmecore`."""
from __future__ import annotations

from certificate.certifier import (
    Certifier,
    CertifierOptions,
    ObtainForCSRRequest,
    ObtainRequest,
    Resource,
)
from certificate.renewal import RenewalInfo, make_ari_cert_id

__all__ = [
    "Certifier",
    "CertifierOptions",
    "ObtainForCSRRequest",
    "ObtainRequest",
    "RenewalInfo",
    "Resource",
    "make_ari_cert_id",
]
