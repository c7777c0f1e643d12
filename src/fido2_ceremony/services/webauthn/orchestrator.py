"""
WebAuthn ceremony orchestration.

Composes the challenge store, credential store, verifier and principal
directory into the four ceremony operations. Finish calls never raise on
ceremony failure: every rejection is logged with its reason and collapsed to
a negative result, so callers cannot tell failure causes apart.
"""

from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from fido2_ceremony.config import Settings, settings as default_settings
from fido2_ceremony.database import DatabaseManager, db_manager
from fido2_ceremony.managers.logging_manager import get_logger
from fido2_ceremony.models import (
    CeremonyOutcome,
    ChallengeType,
    CredentialDescriptor,
    InvalidPrincipalError,
    Principal,
    PrincipalLike,
    RegistrationResult,
    StoredCredential,
)
from fido2_ceremony.services.webauthn.challenge import ChallengeStore
from fido2_ceremony.services.webauthn.credentials import CredentialStore
from fido2_ceremony.services.webauthn.principals import PrincipalDirectory
from fido2_ceremony.services.webauthn.verifier import WebAuthnVerifier
from fido2_ceremony.utils.logging_utils import (
    log_auth_failure,
    log_auth_success,
    log_error_with_context,
    log_performance,
    log_security_event,
)

logger = get_logger(prefix="[WebAuthn Ceremony]")

REGISTRATION_AUTHENTICATOR_SELECTION: Dict[str, Any] = {
    "userVerification": "preferred",
    "requireResidentKey": False,
}


def _require_id(principal: PrincipalLike) -> str:
    principal_id = getattr(principal, "id", None)
    if not principal_id:
        raise InvalidPrincipalError("principal must have an id")
    return str(principal_id)


class _CeremonyAborted(Exception):
    """Raised inside a transaction to roll back a ceremony that lost a guarded write."""

    def __init__(self, outcome: CeremonyOutcome):
        super().__init__(outcome.value)
        self.outcome = outcome


def _counter_accepted(stored: int, reported: int) -> bool:
    # Authenticators without a counter always report zero.
    return reported > stored or (reported == 0 and stored == 0)


class CeremonyOrchestrator:
    """Registration and authentication ceremonies for one relying party."""

    def __init__(
        self,
        challenges: ChallengeStore,
        credentials: CredentialStore,
        verifier: WebAuthnVerifier,
        principals: PrincipalDirectory,
        db: DatabaseManager = db_manager,
        settings: Settings = default_settings,
    ):
        self.challenges = challenges
        self.credentials = credentials
        self.verifier = verifier
        self.principals = principals
        self.db = db
        self.rp_name = settings.WEBAUTHN_RP_NAME
        self.rp_id = settings.WEBAUTHN_RP_ID
        self.origin = settings.WEBAUTHN_ORIGIN

    # --- registration ---

    @log_performance("webauthn_registration_begin")
    async def begin_registration(self, principal: PrincipalLike) -> Dict[str, Any]:
        """
        Build creation options for a principal and store their challenge.

        Raises:
            InvalidPrincipalError: if the principal has no id
        """
        principal_id = _require_id(principal)
        try:
            exclude = await self.credentials.list_descriptors(principal_id)
            options = await self.verifier.generate_registration_options(
                rp_name=self.rp_name,
                rp_id=self.rp_id,
                user_id=principal_id,
                user_name=principal.login,
                user_display_name=principal.display_name,
                attestation="none",
                authenticator_selection=dict(REGISTRATION_AUTHENTICATOR_SELECTION),
                exclude_credentials=exclude,
            )
            await self.challenges.issue(options["challenge"], principal_id, ChallengeType.REGISTRATION)
        except Exception as e:
            log_error_with_context(e, context={"principal_id": principal_id}, operation="webauthn_registration_begin")
            raise

        logger.info("Registration options issued for %s (%d excluded)", principal_id, len(exclude))
        return options

    @log_performance("webauthn_registration_finish")
    async def finish_registration(
        self,
        principal: PrincipalLike,
        response: Dict[str, Any],
        device_name: Optional[str] = None,
    ) -> RegistrationResult:
        """
        Verify a registration response and store the new credential.

        Raises:
            InvalidPrincipalError: if the principal has no id
        """
        principal_id = _require_id(principal)
        outcome, info = await self._finish_registration(principal_id, response, device_name)

        if outcome is not CeremonyOutcome.VERIFIED:
            log_auth_failure(
                event_type="webauthn_registration_failed",
                user_id=principal_id,
                details={"reason": outcome.value},
            )
            return RegistrationResult(verified=False)

        log_auth_success(
            event_type="webauthn_registration_completed",
            user_id=principal_id,
            details={"credential_id_prefix": str(response.get("id"))[:16], "device_name": device_name},
        )
        return RegistrationResult(verified=True, registration_info=info)

    async def _finish_registration(
        self, principal_id: str, response: Dict[str, Any], device_name: Optional[str]
    ) -> Tuple[CeremonyOutcome, Optional[Dict[str, Any]]]:
        challenge = await self.challenges.find_latest_unused(principal_id, ChallengeType.REGISTRATION)
        if challenge is None:
            return CeremonyOutcome.CHALLENGE_NOT_FOUND, None

        credential_id = response.get("id") if isinstance(response, dict) else None
        if not credential_id:
            return CeremonyOutcome.CRYPTO_REJECTED, None

        try:
            verification = await self.verifier.verify_registration_response(
                response=response,
                expected_challenge=challenge.id,
                expected_origin=self.origin,
                expected_rp_id=self.rp_id,
            )
        except Exception as e:
            logger.warning("Registration response rejected by verifier: %s", e)
            return CeremonyOutcome.CRYPTO_REJECTED, None
        if not verification.verified:
            return CeremonyOutcome.CRYPTO_REJECTED, None

        transports = (response.get("response") or {}).get("transports")
        try:
            async with self.db.transaction() as session:
                if not await self.challenges.mark_used(challenge.id, session=session):
                    raise _CeremonyAborted(CeremonyOutcome.CHALLENGE_ALREADY_USED)
                await self.credentials.create(
                    credential_id=credential_id,
                    principal_id=principal_id,
                    public_key=verification.public_key,
                    counter=verification.counter,
                    transports=transports,
                    device_name=device_name,
                    session=session,
                )
        except _CeremonyAborted as aborted:
            return aborted.outcome, None
        except DuplicateKeyError:
            return CeremonyOutcome.CREDENTIAL_EXISTS, None

        return CeremonyOutcome.VERIFIED, verification.info

    # --- authentication ---

    @log_performance("webauthn_authentication_begin")
    async def begin_authentication(self, principal_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Build request options.

        With a principal id the options carry an allow list and a challenge
        is stored; without one (discoverable flow) nothing is stored.
        """
        try:
            allow_credentials: Optional[List[CredentialDescriptor]] = None
            if principal_id:
                allow_credentials = await self.credentials.list_descriptors(principal_id)
            options = await self.verifier.generate_authentication_options(
                rp_id=self.rp_id,
                user_verification="preferred",
                allow_credentials=allow_credentials,
            )
            if principal_id:
                await self.challenges.issue(options["challenge"], principal_id, ChallengeType.AUTHENTICATION)
        except Exception as e:
            log_error_with_context(e, context={"principal_id": principal_id}, operation="webauthn_authentication_begin")
            raise

        log_security_event(
            event_type="webauthn_authentication_begin",
            user_id=principal_id,
            success=True,
            details={
                "discoverable": principal_id is None,
                "allowed_credentials": len(allow_credentials) if allow_credentials is not None else 0,
            },
        )
        return options

    @log_performance("webauthn_authentication_finish")
    async def finish_authentication(self, principal_id: str, response: Dict[str, Any]) -> Optional[Principal]:
        """Verify an assertion; the authenticated principal, or None on any failure."""
        outcome = await self._finish_authentication(principal_id, response)
        if outcome is not CeremonyOutcome.VERIFIED:
            log_auth_failure(
                event_type="webauthn_authentication_failed",
                user_id=principal_id,
                details={"reason": outcome.value},
            )
            return None

        principal = await self.principals.find_by_id(principal_id)
        if principal is None:
            logger.warning("Authenticated principal %s is no longer in the directory", principal_id)
            return None

        log_auth_success(event_type="webauthn_authentication_completed", user_id=principal_id)
        return principal

    async def _finish_authentication(self, principal_id: str, response: Dict[str, Any]) -> CeremonyOutcome:
        if not principal_id:
            return CeremonyOutcome.CHALLENGE_NOT_FOUND

        challenge = await self.challenges.find_latest_unused(principal_id, ChallengeType.AUTHENTICATION)
        if challenge is None:
            return CeremonyOutcome.CHALLENGE_NOT_FOUND

        credential_id = response.get("id") if isinstance(response, dict) else None
        credential = await self.credentials.get_by_id(credential_id) if credential_id else None
        if credential is None:
            return CeremonyOutcome.CREDENTIAL_NOT_FOUND
        if credential.principal_id != principal_id:
            return CeremonyOutcome.CREDENTIAL_PRINCIPAL_MISMATCH

        try:
            verification = await self.verifier.verify_authentication_response(
                response=response,
                expected_challenge=challenge.id,
                expected_origin=self.origin,
                expected_rp_id=self.rp_id,
                credential=credential,
            )
        except Exception as e:
            logger.warning("Authentication response rejected by verifier: %s", e)
            return CeremonyOutcome.CRYPTO_REJECTED
        if not verification.verified:
            return CeremonyOutcome.CRYPTO_REJECTED

        if not _counter_accepted(credential.counter, verification.new_counter):
            logger.warning(
                "Counter for credential %s did not advance (stored %d, reported %d)",
                credential.id[:16],
                credential.counter,
                verification.new_counter,
            )
            return CeremonyOutcome.COUNTER_REJECTED

        try:
            async with self.db.transaction() as session:
                if not await self.challenges.mark_used(challenge.id, session=session):
                    raise _CeremonyAborted(CeremonyOutcome.CHALLENGE_ALREADY_USED)
                if not await self.credentials.update_counter(credential.id, verification.new_counter, session=session):
                    raise _CeremonyAborted(CeremonyOutcome.COUNTER_REJECTED)
        except _CeremonyAborted as aborted:
            if aborted.outcome is CeremonyOutcome.COUNTER_REJECTED:
                logger.warning("Counter for credential %s moved during verification", credential.id[:16])
            return aborted.outcome

        return CeremonyOutcome.VERIFIED

    # --- lookups ---

    async def list_credentials(self, principal_id: str) -> List[CredentialDescriptor]:
        return await self.credentials.list_descriptors(principal_id)

    async def get_credential(self, credential_id: str) -> Optional[StoredCredential]:
        return await self.credentials.get_by_id(credential_id)

    async def create_principal(self, login: str, display_name: str) -> Tuple[Principal, Dict[str, Any]]:
        """Insert a principal and start their first registration."""
        principal = await self.principals.insert(login, display_name)
        options = await self.begin_registration(principal)
        return principal, options
