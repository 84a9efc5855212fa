"""Firebase Auth token verifier adapter."""

from __future__ import annotations

from dubtrack.adapters.auth.base import AuthVerificationError, TokenVerifier
from dubtrack.schemas.auth import AuthPrincipal

_ROLE_CLAIM = "role"
_USERNAME_CLAIMS = ("username", "uid", "sub")


class FirebaseTokenVerifier(TokenVerifier):
    """Verifies Firebase ID tokens; the production role travels as a custom claim."""

    def __init__(self, project_id: str | None, audience: str | None) -> None:
        self._project_id = project_id
        self._audience = audience

    def verify_token(self, token: str) -> AuthPrincipal:
        import firebase_admin
        from firebase_admin import auth as firebase_auth
        from firebase_admin import exceptions as firebase_exceptions

        if not firebase_admin._apps:
            options = {"projectId": self._project_id} if self._project_id else None
            firebase_admin.initialize_app(options=options)

        try:
            decoded = firebase_auth.verify_id_token(token, check_revoked=True)
        except (ValueError, firebase_exceptions.FirebaseError) as exc:
            raise AuthVerificationError("Invalid bearer token") from exc

        if self._audience and decoded.get("aud") != self._audience:
            raise AuthVerificationError("Invalid bearer token audience")

        user_id = next((str(decoded[claim]).strip() for claim in _USERNAME_CLAIMS if decoded.get(claim)), "")
        if not user_id:
            raise AuthVerificationError("Bearer token missing user identity")

        role = str(decoded.get(_ROLE_CLAIM) or "member").strip()
        return AuthPrincipal(user_id=user_id, role=role)


__all__ = ["FirebaseTokenVerifier"]
