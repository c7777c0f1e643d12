"""Tests for the py_webauthn verifier adapter."""

import threading
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from webauthn import base64url_to_bytes
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.exceptions import InvalidAuthenticationResponse, InvalidRegistrationResponse

from fido2_ceremony.models import CredentialDescriptor, StoredCredential
from fido2_ceremony.services.webauthn.credentials import encode_public_key
from fido2_ceremony.services.webauthn.verifier import PyWebAuthnVerifier

VERIFIER_MODULE = "fido2_ceremony.services.webauthn.verifier"
CHALLENGE = bytes_to_base64url(b"a-challenge-value")


@pytest.fixture
def adapter():
    return PyWebAuthnVerifier(timeout_ms=30000)


class TestOptions:
    @pytest.mark.asyncio
    async def test_registration_options(self, adapter):
        options = await adapter.generate_registration_options(
            rp_name="Example",
            rp_id="example.com",
            user_id="principal-1",
            user_name="alice",
            user_display_name="Alice",
            attestation="none",
            authenticator_selection={"userVerification": "preferred", "requireResidentKey": False},
            exclude_credentials=[CredentialDescriptor(id="Y3JlZC0x", transports=["usb", "carrier-pigeon"])],
        )

        assert options["rp"] == {"name": "Example", "id": "example.com"}
        assert options["user"]["id"] == bytes_to_base64url(b"principal-1")
        assert options["user"]["name"] == "alice"
        assert options["attestation"] == "none"
        assert options["timeout"] == 30000
        assert options["authenticatorSelection"]["userVerification"] == "preferred"
        assert options["excludeCredentials"] == [{"id": "Y3JlZC0x", "type": "public-key", "transports": ["usb"]}]
        assert base64url_to_bytes(options["challenge"]), "Challenge should be base64url"

    @pytest.mark.asyncio
    async def test_authentication_options_with_allow_list(self, adapter):
        options = await adapter.generate_authentication_options(
            rp_id="example.com",
            user_verification="preferred",
            allow_credentials=[CredentialDescriptor(id="Y3JlZC0x", transports=["internal", "hybrid"])],
        )

        assert options["rpId"] == "example.com"
        assert options["userVerification"] == "preferred"
        assert [c["id"] for c in options["allowCredentials"]] == ["Y3JlZC0x"]
        assert options["allowCredentials"][0]["transports"] == ["internal", "hybrid"]

    @pytest.mark.asyncio
    async def test_authentication_options_discoverable(self, adapter):
        options = await adapter.generate_authentication_options(rp_id="example.com", user_verification="preferred")

        assert options.get("allowCredentials", []) == []

    @pytest.mark.asyncio
    async def test_challenges_are_unique(self, adapter):
        first = await adapter.generate_authentication_options(rp_id="example.com", user_verification="preferred")
        second = await adapter.generate_authentication_options(rp_id="example.com", user_verification="preferred")

        assert first["challenge"] != second["challenge"]


class TestVerification:
    @pytest.mark.asyncio
    async def test_registration_passes_expectations(self, adapter):
        verified = SimpleNamespace(
            credential_id=b"cred-1",
            credential_public_key=b"\xa5\x01",
            sign_count=0,
            aaguid="00000000-0000-0000-0000-000000000000",
            fmt="none",
            credential_type="public-key",
            user_verified=True,
            credential_device_type="single_device",
            credential_backed_up=False,
        )
        response = {"id": "Y3JlZC0x", "response": {}}
        with patch(f"{VERIFIER_MODULE}.verify_registration_response", return_value=verified) as mock_verify:
            result = await adapter.verify_registration_response(
                response, CHALLENGE, "https://example.com", "example.com"
            )

        kwargs = mock_verify.call_args.kwargs
        assert kwargs["credential"] is response
        assert kwargs["expected_challenge"] == b"a-challenge-value"
        assert kwargs["expected_origin"] == "https://example.com"
        assert kwargs["expected_rp_id"] == "example.com"
        assert result.verified is True
        assert result.public_key == b"\xa5\x01"
        assert result.counter == 0
        assert result.info["credential_id"] == "Y3JlZC0x"
        assert result.info["fmt"] == "none"

    @pytest.mark.asyncio
    async def test_registration_rejection_propagates(self, adapter):
        with patch(
            f"{VERIFIER_MODULE}.verify_registration_response",
            side_effect=InvalidRegistrationResponse("bad attestation"),
        ):
            with pytest.raises(InvalidRegistrationResponse):
                await adapter.verify_registration_response({}, CHALLENGE, "https://example.com", "example.com")

    @pytest.mark.asyncio
    async def test_authentication_passes_stored_key_and_counter(self, adapter):
        credential = StoredCredential(
            id="Y3JlZC0x", principal_id="p1", public_key=encode_public_key(b"\xa5\x01\x02"), counter=3
        )
        verified = SimpleNamespace(
            new_sign_count=4, user_verified=False, credential_device_type="multi_device", credential_backed_up=True
        )
        with patch(f"{VERIFIER_MODULE}.verify_authentication_response", return_value=verified) as mock_verify:
            result = await adapter.verify_authentication_response(
                {"id": "Y3JlZC0x"}, CHALLENGE, "https://example.com", "example.com", credential
            )

        kwargs = mock_verify.call_args.kwargs
        assert kwargs["credential_public_key"] == b"\xa5\x01\x02"
        assert kwargs["credential_current_sign_count"] == 3
        assert kwargs["expected_challenge"] == b"a-challenge-value"
        assert result.verified is True
        assert result.new_counter == 4
        assert result.info["credential_backed_up"] is True

    @pytest.mark.asyncio
    async def test_authentication_rejection_propagates(self, adapter):
        credential = StoredCredential(id="x", principal_id="p1", public_key=encode_public_key(b"k"))
        with patch(
            f"{VERIFIER_MODULE}.verify_authentication_response",
            side_effect=InvalidAuthenticationResponse("bad signature"),
        ):
            with pytest.raises(InvalidAuthenticationResponse):
                await adapter.verify_authentication_response(
                    {}, CHALLENGE, "https://example.com", "example.com", credential
                )


class TestVerificationThread:
    @pytest.mark.asyncio
    async def test_registration_verifies_off_the_event_loop_thread(self, adapter):
        threads = []

        def record_thread(**kwargs):
            threads.append(threading.current_thread())
            raise InvalidRegistrationResponse("bad attestation")

        with patch(f"{VERIFIER_MODULE}.verify_registration_response", side_effect=record_thread):
            with pytest.raises(InvalidRegistrationResponse):
                await adapter.verify_registration_response({}, CHALLENGE, "https://example.com", "example.com")

        assert threads and threads[0] is not threading.current_thread(), "Verification must run in a worker thread"

    @pytest.mark.asyncio
    async def test_authentication_verifies_off_the_event_loop_thread(self, adapter):
        credential = StoredCredential(id="x", principal_id="p1", public_key=encode_public_key(b"k"))
        threads = []

        def record_thread(**kwargs):
            threads.append(threading.current_thread())
            return SimpleNamespace(
                new_sign_count=1, user_verified=True, credential_device_type="single_device", credential_backed_up=False
            )

        with patch(f"{VERIFIER_MODULE}.verify_authentication_response", side_effect=record_thread):
            result = await adapter.verify_authentication_response(
                {}, CHALLENGE, "https://example.com", "example.com", credential
            )

        assert result.new_counter == 1
        assert threads and threads[0] is not threading.current_thread(), "Verification must run in a worker thread"
