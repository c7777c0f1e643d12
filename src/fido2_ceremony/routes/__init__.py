"""HTTP routes."""

from fido2_ceremony.routes.webauthn import router as webauthn_router
