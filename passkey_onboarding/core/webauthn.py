"""WebAuthn ceremonies.

The saga and the login service talk to a CredentialVerifier. The production
implementation wraps fido2's Fido2Server; tests substitute a fake.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from fido2 import cbor
from fido2.cose import CoseKey
from fido2.server import Fido2Server
from fido2.utils import websafe_encode
from fido2.webauthn import (
    Aaguid,
    AttestedCredentialData,
    AuthenticationResponse,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialType,
    PublicKeyCredentialUserEntity,
    RegistrationResponse,
)

from passkey_onboarding.core.errors import VerificationFailure
from passkey_onboarding.core.models import Credential, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatorPolicy:
    authenticator_attachment: Optional[str] = "cross-platform"
    user_verification: str = "preferred"


@dataclass(frozen=True)
class RegistrationVerification:
    credential_id: bytes
    public_key: bytes
    signature_count: int
    aaguid: Optional[str] = None


@dataclass(frozen=True)
class AssertionVerification:
    credential_id: bytes
    signature_count: int


def json_safe(value: Any) -> Any:
    """Convert fido2 option objects into JSON-friendly data (bytes as base64url)."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return websafe_encode(bytes(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {key: json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(item) for item in value]
    return value


def check_signature_counter(stored: int, received: int) -> None:
    """Reject a counter that did not advance.

    Authenticators that do not implement a counter report 0 every time; that
    pair is accepted.

    Raises:
        VerificationFailure: The counter went backwards or repeated
    """
    if stored == 0 and received == 0:
        return
    if received <= stored:
        raise VerificationFailure(
            f"Signature counter did not increase (stored={stored}, received={received}); "
            "the authenticator may have been cloned"
        )


class CredentialVerifier(ABC):
    @abstractmethod
    def start_registration(
        self,
        user: User,
        policy: AuthenticatorPolicy,
        exclude: Sequence[Credential] = (),
    ) -> Tuple[Dict[str, Any], Any]:
        """Return (options for the browser, state needed to finish)."""

    @abstractmethod
    def finish_registration(self, state: Any, response: Dict[str, Any]) -> RegistrationVerification:
        """Verify an attestation response.

        Raises:
            VerificationFailure: The response does not match the challenge or is malformed
        """

    @abstractmethod
    def start_assertion(
        self,
        credentials: Sequence[Credential],
        policy: AuthenticatorPolicy,
    ) -> Tuple[Dict[str, Any], Any]:
        ...

    @abstractmethod
    def finish_assertion(
        self,
        state: Any,
        credentials: Sequence[Credential],
        response: Dict[str, Any],
    ) -> AssertionVerification:
        """Verify an assertion against the user's stored credentials.

        Raises:
            VerificationFailure: Bad signature, unknown credential or counter regression
        """


class Fido2CredentialVerifier(CredentialVerifier):
    """CredentialVerifier backed by fido2.server.Fido2Server."""

    def __init__(self, rp_id: str, rp_name: str, allowed_origins: Optional[Iterable[str]] = None):
        self.rp = PublicKeyCredentialRpEntity(name=rp_name, id=rp_id)
        self.allowed_origins = set(allowed_origins or ())
        verify_origin = self._verify_origin if self.allowed_origins else None
        self.server = Fido2Server(self.rp, verify_origin=verify_origin)

    def _verify_origin(self, origin: str) -> bool:
        return origin in self.allowed_origins

    @staticmethod
    def _descriptors(credentials: Sequence[Credential]) -> List[PublicKeyCredentialDescriptor]:
        return [
            PublicKeyCredentialDescriptor(type=PublicKeyCredentialType.PUBLIC_KEY, id=c.credential_id)
            for c in credentials
        ]

    @staticmethod
    def _attested(credential: Credential) -> AttestedCredentialData:
        public_key = CoseKey.parse(cbor.decode(credential.public_key))
        return AttestedCredentialData.create(Aaguid.NONE, credential.credential_id, public_key)

    def start_registration(self, user, policy, exclude=()):
        user_entity = PublicKeyCredentialUserEntity(
            name=user.username,
            id=user.handle,
            display_name=user.display_name,
        )
        options, state = self.server.register_begin(
            user_entity,
            self._descriptors(exclude),
            user_verification=policy.user_verification,
            authenticator_attachment=policy.authenticator_attachment,
        )
        return json_safe(dict(options)), state

    def finish_registration(self, state, response):
        try:
            parsed = RegistrationResponse.from_dict(response)
            auth_data = self.server.register_complete(state, parsed)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Registration response rejected: %s", exc)
            raise VerificationFailure(f"Registration response rejected: {exc}", cause=exc) from exc

        credential_data = auth_data.credential_data
        if credential_data is None:
            raise VerificationFailure("Attestation carried no credential data")
        return RegistrationVerification(
            credential_id=bytes(credential_data.credential_id),
            public_key=cbor.encode(credential_data.public_key),
            signature_count=auth_data.counter,
            aaguid=str(credential_data.aaguid) if credential_data.aaguid else None,
        )

    def start_assertion(self, credentials, policy):
        options, state = self.server.authenticate_begin(
            self._descriptors(credentials),
            user_verification=policy.user_verification,
        )
        return json_safe(dict(options)), state

    def finish_assertion(self, state, credentials, response):
        by_id = {c.credential_id: c for c in credentials}
        try:
            parsed = AuthenticationResponse.from_dict(response)
            self.server.authenticate_complete(
                state,
                [self._attested(c) for c in credentials],
                parsed,
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Assertion rejected: %s", exc)
            raise VerificationFailure(f"Assertion rejected: {exc}", cause=exc) from exc

        credential_id = bytes(parsed.raw_id)
        stored = by_id.get(credential_id)
        if stored is None:
            raise VerificationFailure("Assertion used a credential not registered to this user")

        received = parsed.response.authenticator_data.counter
        check_signature_counter(stored.signature_count, received)
        return AssertionVerification(credential_id=credential_id, signature_count=received)
