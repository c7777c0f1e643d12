"""
Pytest configuration for the ceremony engine tests.

Provides an in-memory stand-in for motor collections, a controllable clock
and a scripted WebAuthn verifier, so ceremonies run without MongoDB or real
authenticators.
"""

import copy
from datetime import datetime, timedelta, timezone
import os
import sys
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

# Keep test runs off the filesystem and away from Loki
os.environ["LOG_DIR"] = ""
os.environ["LOKI_ENABLED"] = "false"

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from bson import ObjectId  # noqa: E402
from pymongo import DESCENDING  # noqa: E402
from pymongo.errors import DuplicateKeyError  # noqa: E402

from fido2_ceremony.database import DatabaseManager  # noqa: E402
from fido2_ceremony.models import Principal  # noqa: E402
from fido2_ceremony.services.webauthn.challenge import ChallengeStore  # noqa: E402
from fido2_ceremony.services.webauthn.credentials import CredentialStore  # noqa: E402
from fido2_ceremony.services.webauthn.orchestrator import CeremonyOrchestrator  # noqa: E402
from fido2_ceremony.services.webauthn.principals import MongoPrincipalDirectory  # noqa: E402
from fido2_ceremony.services.webauthn.verifier import (  # noqa: E402
    AuthenticationVerification,
    RegistrationVerification,
)


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, condition in query.items():
        value = doc.get(key)
        if isinstance(condition, dict) and any(op.startswith("$") for op in condition):
            for op, operand in condition.items():
                if op == "$gt" and not (value is not None and value > operand):
                    return False
                if op == "$lt" and not (value is not None and value < operand):
                    return False
                if op == "$ne" and value == operand:
                    return False
        elif value != condition:
            return False
    return True


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, key: str, direction: int = 1):
        self._docs = sorted(self._docs, key=lambda d: d.get(key), reverse=direction == DESCENDING)
        return self

    def limit(self, n: int):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = self._docs if length is None else self._docs[:length]
        return [copy.deepcopy(d) for d in docs]


class FakeCollection:
    """Subset of AsyncIOMotorCollection backed by a list of documents."""

    def __init__(self):
        self.docs: List[Dict[str, Any]] = []
        self.indexes: List[Dict[str, Any]] = []
        self.sessions: List[Any] = []

    def seed(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        self.docs.append(copy.deepcopy(doc))
        return doc

    async def insert_one(self, doc: Dict[str, Any], session=None):
        self.sessions.append(session)
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", ObjectId())
        if any(existing["_id"] == doc["_id"] for existing in self.docs):
            raise DuplicateKeyError("E11000 duplicate key error")
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    def find(self, query: Dict[str, Any], session=None) -> FakeCursor:
        return FakeCursor([d for d in self.docs if _matches(d, query)])

    async def find_one(self, query: Dict[str, Any], session=None) -> Optional[Dict[str, Any]]:
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def _update(self, query, update, many: bool):
        matched = modified = 0
        for doc in self.docs:
            if not _matches(doc, query):
                continue
            matched += 1
            before = dict(doc)
            doc.update(update.get("$set", {}))
            if doc != before:
                modified += 1
            if not many:
                break
        return SimpleNamespace(matched_count=matched, modified_count=modified)

    async def update_one(self, query, update, session=None):
        self.sessions.append(session)
        return self._update(query, update, many=False)

    async def update_many(self, query, update, session=None):
        self.sessions.append(session)
        return self._update(query, update, many=True)

    async def delete_many(self, query, session=None):
        kept = [d for d in self.docs if not _matches(d, query)]
        deleted = len(self.docs) - len(kept)
        self.docs = kept
        return SimpleNamespace(deleted_count=deleted)

    async def create_index(self, keys, **kwargs):
        self.indexes.append({"keys": keys, **kwargs})
        return kwargs.get("name")


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeVerifier:
    """
    Scripted WebAuthnVerifier.

    Responses carry the challenge they answer in a top-level ``challenge``
    field; verification fails when it differs from the expected one.
    """

    def __init__(self):
        self._issued = 0
        self.registration_option_calls: List[Dict[str, Any]] = []
        self.authentication_option_calls: List[Dict[str, Any]] = []
        self.verify_calls: List[Dict[str, Any]] = []

    def _next_challenge(self, kind: str) -> str:
        self._issued += 1
        return f"{kind}-challenge-{self._issued}"

    async def generate_registration_options(self, **kwargs) -> Dict[str, Any]:
        self.registration_option_calls.append(kwargs)
        return {
            "challenge": self._next_challenge("reg"),
            "rp": {"id": kwargs["rp_id"], "name": kwargs["rp_name"]},
            "user": {
                "id": kwargs["user_id"],
                "name": kwargs["user_name"],
                "displayName": kwargs["user_display_name"],
            },
            "attestation": kwargs["attestation"],
            "authenticatorSelection": kwargs["authenticator_selection"],
            "excludeCredentials": [d.model_dump() for d in kwargs["exclude_credentials"]],
        }

    async def verify_registration_response(self, response, expected_challenge, expected_origin, expected_rp_id):
        self.verify_calls.append({"kind": "registration", "expected_challenge": expected_challenge})
        if response.get("challenge") != expected_challenge:
            raise ValueError("challenge mismatch")
        return RegistrationVerification(
            verified=response.get("verified", True),
            public_key=b"public-key-" + response["id"].encode(),
            counter=response.get("counter", 0),
            info={"fmt": "none"},
        )

    async def generate_authentication_options(self, rp_id, user_verification, allow_credentials=None):
        self.authentication_option_calls.append(
            {"rp_id": rp_id, "user_verification": user_verification, "allow_credentials": allow_credentials}
        )
        options = {"challenge": self._next_challenge("auth"), "rpId": rp_id, "userVerification": user_verification}
        if allow_credentials is not None:
            options["allowCredentials"] = [d.model_dump() for d in allow_credentials]
        return options

    async def verify_authentication_response(self, response, expected_challenge, expected_origin, expected_rp_id, credential):
        self.verify_calls.append({"kind": "authentication", "expected_challenge": expected_challenge})
        if response.get("challenge") != expected_challenge:
            raise ValueError("challenge mismatch")
        return AuthenticationVerification(
            verified=response.get("verified", True),
            new_counter=response.get("counter", credential.counter + 1),
        )


def build_registration_response(challenge: str, credential_id: str = "cred-1", **extra) -> Dict[str, Any]:
    response = {"id": credential_id, "rawId": credential_id, "type": "public-key", "challenge": challenge}
    transports = extra.pop("transports", None)
    response["response"] = {"transports": transports} if transports is not None else {}
    response.update(extra)
    return response


def build_assertion(challenge: str, credential_id: str = "cred-1", **extra) -> Dict[str, Any]:
    response = {"id": credential_id, "rawId": credential_id, "type": "public-key", "challenge": challenge}
    response.update(extra)
    return response


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def challenge_collection():
    return FakeCollection()


@pytest.fixture
def credential_collection():
    return FakeCollection()


@pytest.fixture
def principal_collection():
    return FakeCollection()


@pytest.fixture
def challenge_store(challenge_collection, clock):
    return ChallengeStore(collection=challenge_collection, clock=clock)


@pytest.fixture
def credential_store(credential_collection, clock):
    return CredentialStore(collection=credential_collection, clock=clock)


@pytest.fixture
def principal_directory(principal_collection):
    return MongoPrincipalDirectory(collection=principal_collection)


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def orchestrator(challenge_store, credential_store, verifier, principal_directory):
    # A manager without a client runs writes outside a transaction.
    return CeremonyOrchestrator(
        challenges=challenge_store,
        credentials=credential_store,
        verifier=verifier,
        principals=principal_directory,
        db=DatabaseManager(),
    )


@pytest.fixture
def principal(principal_collection) -> Principal:
    oid = ObjectId()
    principal_collection.seed({"_id": oid, "login": "alice", "display_name": "Alice", "is_active": True})
    return Principal(id=str(oid), login="alice", display_name="Alice")


@pytest.fixture
def registration_response():
    return build_registration_response


@pytest.fixture
def assertion():
    return build_assertion
