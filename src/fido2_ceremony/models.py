"""Record and result models for WebAuthn ceremonies."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_TRANSPORTS: List[str] = ["internal", "hybrid"]
UNPARSEABLE_TRANSPORTS: List[str] = ["internal"]


class InvalidPrincipalError(ValueError):
    """Raised when a principal without an identifier is passed to a ceremony."""


class ChallengeType(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


class CeremonyOutcome(str, Enum):
    """Internal outcome of a finish call.

    Only ``VERIFIED`` is visible to callers; every other value collapses to a
    negative result at the public boundary.
    """

    VERIFIED = "verified"
    CHALLENGE_NOT_FOUND = "challenge_not_found"
    CHALLENGE_ALREADY_USED = "challenge_already_used"
    CREDENTIAL_NOT_FOUND = "credential_not_found"
    CREDENTIAL_EXISTS = "credential_exists"
    CREDENTIAL_PRINCIPAL_MISMATCH = "credential_principal_mismatch"
    CRYPTO_REJECTED = "crypto_rejected"
    COUNTER_REJECTED = "counter_rejected"


@runtime_checkable
class PrincipalLike(Protocol):
    """Minimal principal capability needed by the ceremonies."""

    id: Optional[str]
    login: str
    display_name: str


class Principal(BaseModel):
    id: Optional[str] = None
    login: str
    display_name: str
    is_active: bool = True

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Principal":
        return cls(
            id=str(doc["_id"]),
            login=doc["login"],
            display_name=doc.get("display_name") or doc["login"],
            is_active=doc.get("is_active", True),
        )


class StoredChallenge(BaseModel):
    """A single-use challenge; ``id`` is the challenge value itself."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    principal_id: Optional[str] = None
    type: ChallengeType
    expires_at: datetime
    used: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(by_alias=True)
        doc["type"] = self.type.value
        return doc


class StoredCredential(BaseModel):
    """An enrolled authenticator credential.

    ``id`` is the credential id exactly as the client sent it.
    ``public_key`` is base64 and ``transports`` is a JSON list, both as stored.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    principal_id: str
    public_key: str
    counter: int = Field(default=0, ge=0)
    transports: Optional[str] = None
    device_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class CredentialDescriptor(BaseModel):
    id: str
    type: str = "public-key"
    transports: List[str] = Field(default_factory=list)


class RegistrationResult(BaseModel):
    verified: bool
    registration_info: Optional[Dict[str, Any]] = None
