"""
RFC 8555 wire resources as pydantic models.

Field names are snake_case in Python and camelCase on the wire; use
`to_wire()` to serialise a request body and `Model.model_validate(json)` to
parse a response.  Attributes that do not come from the JSON body (resource
location, Retry-After, ...) are filled in by the services and excluded from
serialisation.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ─── Status values ────────────────────────────────────────────────────────────

STATUS_DEACTIVATED = "deactivated"
STATUS_EXPIRED = "expired"
STATUS_INVALID = "invalid"
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_READY = "ready"
STATUS_REVOKED = "revoked"
STATUS_UNKNOWN = "unknown"
STATUS_VALID = "valid"


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ─── Problems ─────────────────────────────────────────────────────────────────


class Identifier(WireModel):
    type: str = "dns"
    value: str


class SubProblem(WireModel):
    type: str = ""
    detail: str = ""
    identifier: Optional[Identifier] = None


class Problem(WireModel):
    """RFC 7807 problem document."""

    type: str = ""
    detail: str = ""
    status: Optional[int] = None
    instance: str = ""
    subproblems: list[SubProblem] = Field(default_factory=list)

    def __str__(self) -> str:
        msg = f"acme: error: {self.status or 0} :: {self.type} :: {self.detail}"
        for sub in self.subproblems:
            target = sub.identifier.value if sub.identifier else ""
            msg += f", problem: {sub.type} :: {sub.detail} :: {target}"
        if self.instance:
            msg += f", url: {self.instance}"
        return msg


# ─── Directory ────────────────────────────────────────────────────────────────


class Meta(WireModel):
    terms_of_service: str = ""
    website: str = ""
    caa_identities: list[str] = Field(default_factory=list)
    external_account_required: bool = False


class Directory(WireModel):
    model_config = ConfigDict(frozen=True)

    new_nonce: str = ""
    new_account: str = ""
    new_order: str = ""
    new_authz: str = ""
    revoke_cert: str = ""
    key_change: str = ""
    renewal_info: str = ""
    meta: Meta = Field(default_factory=Meta)


# ─── Account ──────────────────────────────────────────────────────────────────


class Account(WireModel):
    status: Optional[str] = None
    contact: Optional[list[str]] = None
    terms_of_service_agreed: Optional[bool] = None
    orders: Optional[str] = None
    only_return_existing: Optional[bool] = None
    external_account_binding: Optional[dict[str, str]] = None

    location: str = Field(default="", exclude=True)


# ─── Orders, authorizations, challenges ───────────────────────────────────────


class Order(WireModel):
    status: str = ""
    expires: Optional[str] = None
    identifiers: list[Identifier] = Field(default_factory=list)
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    error: Optional[Problem] = None
    authorizations: list[str] = Field(default_factory=list)
    finalize: str = ""
    certificate: Optional[str] = None
    replaces: Optional[str] = None

    location: str = Field(default="", exclude=True)


class Challenge(WireModel):
    type: str = ""
    url: str = ""
    status: str = ""
    token: str = ""
    validated: Optional[str] = None
    error: Optional[Problem] = None
    key_authorization: Optional[str] = None

    retry_after: str = Field(default="", exclude=True)
    authorization_url: str = Field(default="", exclude=True)


class Authorization(WireModel):
    status: str = ""
    expires: Optional[str] = None
    identifier: Identifier
    challenges: list[Challenge] = Field(default_factory=list)
    wildcard: bool = False

    location: str = Field(default="", exclude=True)


# ─── ACME Renewal Information ─────────────────────────────────────────────────


class Window(WireModel):
    start: datetime
    end: datetime


class RenewalInfoResponse(WireModel):
    suggested_window: Window
    explanation_url: str = Field(
        default="",
        validation_alias=AliasChoices("explanationURL", "explanationUrl"),
        serialization_alias="explanationURL",
    )

    retry_after: str = Field(default="", exclude=True)


class RenewalInfoUpdate(WireModel):
    cert_id: str = Field(alias="certID")
    replaced: bool = True


# ─── Request bodies ───────────────────────────────────────────────────────────


class CSRMessage(WireModel):
    csr: str


class RevokeCertMessage(WireModel):
    certificate: str
    reason: Optional[int] = None
