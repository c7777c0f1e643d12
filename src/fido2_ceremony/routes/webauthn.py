"""
WebAuthn ceremony routes.

Thin JSON endpoints over ``CeremonyOrchestrator``. The principal of a
ceremony is always resolved from the request body and the stored challenge;
nothing is kept in process memory between begin and finish.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pymongo.errors import PyMongoError

from fido2_ceremony.config import settings
from fido2_ceremony.managers.logging_manager import get_logger
from fido2_ceremony.services.webauthn.challenge import ChallengeStore
from fido2_ceremony.services.webauthn.credentials import CredentialStore
from fido2_ceremony.services.webauthn.orchestrator import CeremonyOrchestrator
from fido2_ceremony.services.webauthn.principals import MongoPrincipalDirectory
from fido2_ceremony.services.webauthn.verifier import PyWebAuthnVerifier
from fido2_ceremony.utils.logging_utils import log_error_with_context

logger = get_logger(prefix="[WebAuthn Routes]")

router = APIRouter(prefix="/webauthn", tags=["WebAuthn"])


class RegisterBeginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    login: str = Field(..., min_length=1, max_length=128)
    display_name: Optional[str] = Field(None, alias="displayName", max_length=128)


class RegisterFinishRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=128)
    credential: Dict[str, Any]
    device_name: Optional[str] = Field(None, max_length=128)


class AuthenticateBeginRequest(BaseModel):
    login: Optional[str] = Field(None, min_length=1, max_length=128)


class AuthenticateFinishRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=128)
    assertion: Dict[str, Any]


def get_ceremony_orchestrator() -> CeremonyOrchestrator:
    return CeremonyOrchestrator(
        challenges=ChallengeStore(),
        credentials=CredentialStore(),
        verifier=PyWebAuthnVerifier(timeout_ms=settings.WEBAUTHN_TIMEOUT_MS),
        principals=MongoPrincipalDirectory(),
    )


def _not_verified() -> JSONResponse:
    return JSONResponse({"verified": False}, status_code=status.HTTP_400_BAD_REQUEST)


def _internal_error(e: Exception, operation: str) -> HTTPException:
    log_error_with_context(e, operation=operation)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


@router.post("/register/begin")
async def register_begin(
    payload: RegisterBeginRequest, orchestrator: CeremonyOrchestrator = Depends(get_ceremony_orchestrator)
) -> Dict[str, Any]:
    """Creation options for a login; unknown logins are enrolled as new principals."""
    try:
        principal = await orchestrator.principals.find_by_login(payload.login)
        if principal is None:
            principal, options = await orchestrator.create_principal(
                payload.login, payload.display_name or payload.login
            )
            logger.info("Enrolled new principal %s", principal.id)
            return options
        return await orchestrator.begin_registration(principal)
    except (PyMongoError, RuntimeError, ValueError) as e:
        raise _internal_error(e, "webauthn_register_begin") from e


@router.post("/register/finish")
async def register_finish(
    payload: RegisterFinishRequest, orchestrator: CeremonyOrchestrator = Depends(get_ceremony_orchestrator)
) -> JSONResponse:
    try:
        principal = await orchestrator.principals.find_by_login(payload.login)
        if principal is None:
            return _not_verified()
        result = await orchestrator.finish_registration(principal, payload.credential, payload.device_name)
    except (PyMongoError, RuntimeError, ValueError) as e:
        raise _internal_error(e, "webauthn_register_finish") from e

    if not result.verified:
        return _not_verified()
    return JSONResponse({"verified": True})


@router.post("/authenticate/begin")
async def authenticate_begin(
    payload: AuthenticateBeginRequest, orchestrator: CeremonyOrchestrator = Depends(get_ceremony_orchestrator)
) -> Dict[str, Any]:
    try:
        principal_id = None
        if payload.login:
            principal = await orchestrator.principals.find_by_login(payload.login)
            if principal is None:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown login")
            principal_id = principal.id
        return await orchestrator.begin_authentication(principal_id)
    except (PyMongoError, RuntimeError, ValueError) as e:
        raise _internal_error(e, "webauthn_authenticate_begin") from e


@router.post("/authenticate/finish")
async def authenticate_finish(
    payload: AuthenticateFinishRequest, orchestrator: CeremonyOrchestrator = Depends(get_ceremony_orchestrator)
) -> JSONResponse:
    try:
        principal = await orchestrator.principals.find_by_login(payload.login)
        if principal is None:
            return _not_verified()
        user = await orchestrator.finish_authentication(principal.id, payload.assertion)
    except (PyMongoError, RuntimeError, ValueError) as e:
        raise _internal_error(e, "webauthn_authenticate_finish") from e

    if user is None:
        return _not_verified()
    return JSONResponse(
        {"verified": True, "user": {"id": user.id, "login": user.login, "displayName": user.display_name}}
    )
