"""WebAuthn ceremony services: challenge and credential stores, verifier, principals and orchestrator."""

from fido2_ceremony.services.webauthn.challenge import ChallengeStore
from fido2_ceremony.services.webauthn.credentials import CredentialStore
from fido2_ceremony.services.webauthn.orchestrator import CeremonyOrchestrator
from fido2_ceremony.services.webauthn.principals import MongoPrincipalDirectory, PrincipalDirectory
from fido2_ceremony.services.webauthn.verifier import (
    AuthenticationVerification,
    PyWebAuthnVerifier,
    RegistrationVerification,
    WebAuthnVerifier,
)

__all__ = [
    "AuthenticationVerification",
    "CeremonyOrchestrator",
    "ChallengeStore",
    "CredentialStore",
    "MongoPrincipalDirectory",
    "PrincipalDirectory",
    "PyWebAuthnVerifier",
    "RegistrationVerification",
    "WebAuthnVerifier",
]
