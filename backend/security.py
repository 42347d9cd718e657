import os
import json
import hmac
import hashlib
import base64
from typing import Optional
from dotenv import load_dotenv
from fastapi import Depends, HTTPException, Header
from pydantic import ValidationError

from schemas import Identity

load_dotenv()
SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-session-secret")
LINK_SECRET = os.getenv("LINK_SECRET", "dev-secret")


class URLSafeSerializer:
    """URL-safe HMAC serializer for session and link tokens.

    Encodes/decodes JSON payloads with an HMAC-SHA256 signature:
    token = base64url(payload) + "." + base64url(signature).
    """

    def __init__(self, secret_key, salt=""):
        """
        Args:
            secret_key (str): Secret bytes used for HMAC.
            salt (str): Separates token kinds signed with related secrets.
        """
        self.secret_key = (secret_key or "").encode("utf-8")
        self.salt = salt or ""

    def _key(self) -> bytes:
        return self.secret_key + self.salt.encode("utf-8")

    @staticmethod
    def _b64(data: bytes) -> str:
        """Return base64url-encoded string without padding."""
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")

    @staticmethod
    def _unb64(s: str) -> bytes:
        """Decode base64url string that may be missing padding."""
        s_bytes = s.encode("ascii")
        padding = b"=" * (-len(s_bytes) % 4)
        return base64.urlsafe_b64decode(s_bytes + padding)

    def dumps(self, obj) -> str:
        """Serialize and sign a payload.

        Args:
            obj (Any): JSON-serializable value, e.g. {"user_id", "role"}.

        Returns:
            str: URL-safe token "<b64json>.<b64sig>".
        """
        payload = json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")
        sig = hmac.new(self._key(), payload, hashlib.sha256).digest()
        return f"{self._b64(payload)}.{self._b64(sig)}"

    def loads(self, token: str):
        """Verify signature and decode a payload.

        Args:
            token (str): Token "<b64json>.<b64sig>".

        Returns:
            Any: Decoded JSON payload.

        Raises:
            ValueError: If token format or signature is invalid.
        """
        try:
            payload_b64, sig_b64 = token.rsplit(".", 1)
            payload = self._unb64(payload_b64)
            sig = self._unb64(sig_b64)
        except (ValueError, UnicodeEncodeError):
            raise ValueError("Invalid token format")
        expected = hmac.new(self._key(), payload, hashlib.sha256).digest()
        if not hmac.compare_digest(sig, expected):
            raise ValueError("Invalid signature")
        return json.loads(payload.decode("utf-8"))


session_signer = URLSafeSerializer(secret_key=SESSION_SECRET, salt="session")
link_signer = URLSafeSerializer(secret_key=LINK_SECRET, salt="survey-link")

# ------------------------
# Sessions: the login flow lives elsewhere and hands us {user_id, role}
# ------------------------
def issue_session_token(user_id: str, role: str = "respondent") -> str:
    return session_signer.dumps({"user_id": user_id, "role": role})

def current_identity(authorization: str = Header(default="")) -> Identity:
    """Resolve the bearer session token to an Identity.

    Raises:
        HTTPException: 401 if missing or invalid.
    """
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        identity = Identity(**session_signer.loads(token.strip()))
    except (ValueError, TypeError, ValidationError):
        raise HTTPException(status_code=401, detail="Invalid session")
    if not identity.user_id:
        raise HTTPException(status_code=401, detail="Invalid session")
    return identity

def verify_admin(identity: Identity = Depends(current_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Administrator role required")
    return identity

# ------------------------
# Per-respondent links
# ------------------------
def make_link_token(survey_public_id: str, owner_id: str) -> str:
    return link_signer.dumps({"survey": survey_public_id, "owner": owner_id})

def read_link_token(token: str) -> Optional[tuple[str, str]]:
    """Return (survey_public_id, owner_id), or None for a bad token."""
    try:
        data = link_signer.loads(token)
    except ValueError:
        return None
    if not isinstance(data, dict) or not data.get("survey") or not data.get("owner"):
        return None
    return str(data["survey"]), str(data["owner"])
