"""
WebAuthn verifier boundary.

All attestation and assertion cryptography lives behind ``WebAuthnVerifier``.
``PyWebAuthnVerifier`` binds it to the ``webauthn`` (py_webauthn) library;
nothing in this package parses CBOR, COSE keys or signatures itself.
Verification runs in a worker thread to keep the event loop free.
"""

import asyncio
from dataclasses import dataclass, field
import json
from typing import Any, Dict, List, Optional, Protocol

from webauthn import (
    base64url_to_bytes,
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    UserVerificationRequirement,
)

from fido2_ceremony.managers.logging_manager import get_logger
from fido2_ceremony.models import CredentialDescriptor, StoredCredential
from fido2_ceremony.services.webauthn.credentials import decode_public_key

logger = get_logger(prefix="[WebAuthn Verifier]")


@dataclass
class RegistrationVerification:
    verified: bool
    public_key: bytes = b""
    counter: int = 0
    info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuthenticationVerification:
    verified: bool
    new_counter: int = 0
    info: Dict[str, Any] = field(default_factory=dict)


class WebAuthnVerifier(Protocol):
    """Builds ceremony options and verifies client responses.

    ``verify_*`` methods raise when the response is rejected.
    """

    async def generate_registration_options(
        self,
        rp_name: str,
        rp_id: str,
        user_id: str,
        user_name: str,
        user_display_name: str,
        attestation: str,
        authenticator_selection: Dict[str, Any],
        exclude_credentials: List[CredentialDescriptor],
    ) -> Dict[str, Any]: ...

    async def verify_registration_response(
        self,
        response: Dict[str, Any],
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
    ) -> RegistrationVerification: ...

    async def generate_authentication_options(
        self,
        rp_id: str,
        user_verification: str,
        allow_credentials: Optional[List[CredentialDescriptor]] = None,
    ) -> Dict[str, Any]: ...

    async def verify_authentication_response(
        self,
        response: Dict[str, Any],
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
        credential: StoredCredential,
    ) -> AuthenticationVerification: ...


def _to_descriptor(descriptor: CredentialDescriptor) -> PublicKeyCredentialDescriptor:
    transports = []
    for label in descriptor.transports:
        try:
            transports.append(AuthenticatorTransport(label))
        except ValueError:
            logger.debug("Ignoring unknown transport label: %s", label)
    return PublicKeyCredentialDescriptor(id=base64url_to_bytes(descriptor.id), transports=transports or None)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class PyWebAuthnVerifier:
    """WebAuthnVerifier backed by py_webauthn.

    Options are returned as JSON-ready dicts, so binary fields (challenge,
    user id, credential ids) are base64url strings.
    """

    def __init__(self, timeout_ms: int = 60000, require_user_verification: bool = False):
        self.timeout_ms = timeout_ms
        self.require_user_verification = require_user_verification

    async def generate_registration_options(
        self,
        rp_name: str,
        rp_id: str,
        user_id: str,
        user_name: str,
        user_display_name: str,
        attestation: str,
        authenticator_selection: Dict[str, Any],
        exclude_credentials: List[CredentialDescriptor],
    ) -> Dict[str, Any]:
        options = generate_registration_options(
            rp_id=rp_id,
            rp_name=rp_name,
            user_id=user_id.encode("utf-8"),
            user_name=user_name,
            user_display_name=user_display_name,
            timeout=self.timeout_ms,
            attestation=AttestationConveyancePreference(attestation),
            authenticator_selection=AuthenticatorSelectionCriteria(
                user_verification=UserVerificationRequirement(
                    authenticator_selection.get("userVerification", "preferred")
                ),
                require_resident_key=authenticator_selection.get("requireResidentKey", False),
            ),
            exclude_credentials=[_to_descriptor(d) for d in exclude_credentials],
        )
        return json.loads(options_to_json(options))

    async def verify_registration_response(
        self,
        response: Dict[str, Any],
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
    ) -> RegistrationVerification:
        verified = await asyncio.to_thread(
            verify_registration_response,
            credential=response,
            expected_challenge=base64url_to_bytes(expected_challenge),
            expected_origin=expected_origin,
            expected_rp_id=expected_rp_id,
            require_user_verification=self.require_user_verification,
        )
        return RegistrationVerification(
            verified=True,
            public_key=verified.credential_public_key,
            counter=verified.sign_count,
            info={
                "credential_id": bytes_to_base64url(verified.credential_id),
                "aaguid": verified.aaguid,
                "fmt": _enum_value(verified.fmt),
                "credential_type": _enum_value(verified.credential_type),
                "user_verified": verified.user_verified,
                "credential_device_type": _enum_value(verified.credential_device_type),
                "credential_backed_up": verified.credential_backed_up,
            },
        )

    async def generate_authentication_options(
        self,
        rp_id: str,
        user_verification: str,
        allow_credentials: Optional[List[CredentialDescriptor]] = None,
    ) -> Dict[str, Any]:
        options = generate_authentication_options(
            rp_id=rp_id,
            timeout=self.timeout_ms,
            allow_credentials=(
                [_to_descriptor(d) for d in allow_credentials] if allow_credentials is not None else None
            ),
            user_verification=UserVerificationRequirement(user_verification),
        )
        return json.loads(options_to_json(options))

    async def verify_authentication_response(
        self,
        response: Dict[str, Any],
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
        credential: StoredCredential,
    ) -> AuthenticationVerification:
        verified = await asyncio.to_thread(
            verify_authentication_response,
            credential=response,
            expected_challenge=base64url_to_bytes(expected_challenge),
            expected_origin=expected_origin,
            expected_rp_id=expected_rp_id,
            credential_public_key=decode_public_key(credential.public_key),
            credential_current_sign_count=credential.counter,
            require_user_verification=self.require_user_verification,
        )
        return AuthenticationVerification(
            verified=True,
            new_counter=verified.new_sign_count,
            info={
                "user_verified": verified.user_verified,
                "credential_device_type": _enum_value(verified.credential_device_type),
                "credential_backed_up": verified.credential_backed_up,
            },
        )
