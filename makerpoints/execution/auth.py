"""
Request authentication for the venue REST and stream APIs.

Every authenticated call carries the session bearer token plus an Ed25519
signature over "v1,{request_id},{timestamp},{body}".
"""

import base64
import time
import uuid

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from makerpoints.infrastructure.logging import get_logger

logger = get_logger(__name__)

SIGN_VERSION = "v1"


class AuthenticationError(Exception):
    """No valid session is available."""


class Authenticator:
    """
    Holds the session token and the request-signing key.

    Usage:
        auth = Authenticator(access_token=secrets.standx_access_token,
                             signing_key_hex=secrets.standx_signing_key)
        headers = auth.sign(json.dumps(body))
    """

    def __init__(self, access_token: str = "", signing_key_hex: str = ""):
        self._access_token = access_token.strip()

        if signing_key_hex:
            try:
                seed = bytes.fromhex(signing_key_hex.strip().removeprefix("0x"))
                self._key = Ed25519PrivateKey.from_private_bytes(seed)
            except ValueError as e:
                raise AuthenticationError(f"Invalid signing key: {e}") from e
        else:
            # The venue binds the session to whichever key signs first
            self._key = Ed25519PrivateKey.generate()
            logger.info("Generated ephemeral request-signing key")

    @property
    def is_authenticated(self) -> bool:
        return bool(self._access_token)

    def get_token(self) -> str:
        """
        Current session token.

        Raises:
            AuthenticationError: If no token was provisioned
        """
        if not self._access_token:
            raise AuthenticationError("No access token configured (STANDX_ACCESS_TOKEN)")
        return self._access_token

    def sign(
        self,
        payload: str,
        request_id: str | None = None,
        timestamp_ms: int | None = None,
    ) -> dict[str, str]:
        """Build the authentication headers for one request body."""
        token = self.get_token()
        request_id = request_id or str(uuid.uuid4())
        timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)

        message = f"{SIGN_VERSION},{request_id},{timestamp_ms},{payload}".encode("utf-8")
        signature = base64.b64encode(self._key.sign(message)).decode("utf-8")

        return {
            "Authorization": f"Bearer {token}",
            "x-request-sign-version": SIGN_VERSION,
            "x-request-id": request_id,
            "x-request-timestamp": str(timestamp_ms),
            "x-request-signature": signature,
        }

    def public_key_bytes(self) -> bytes:
        return self._key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
