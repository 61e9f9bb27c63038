from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import firebase_admin
from fastapi import Header, Request
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials

from .config import settings
from .errors import Unauthorized

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    uid: str
    email: Optional[str] = None
    is_admin: bool = False


class TokenVerifier:
    def verify(self, token: str) -> Principal:
        raise NotImplementedError


class StaticTokenVerifier(TokenVerifier):
    """Bearer tokens mapped to uids from configuration."""

    def __init__(self, tokens: dict[str, str], admin_uids: set[str] | None = None) -> None:
        self.tokens = dict(tokens)
        self.admin_uids = set(admin_uids or ())

    def verify(self, token: str) -> Principal:
        uid = self.tokens.get(token)
        if not uid:
            raise Unauthorized("invalid token")
        return Principal(uid=uid, is_admin=uid in self.admin_uids)


def firebase_app() -> firebase_admin.App:
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass
    if settings.FIREBASE_CREDENTIALS:
        cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS)
        return firebase_admin.initialize_app(cred)
    return firebase_admin.initialize_app()


class FirebaseTokenVerifier(TokenVerifier):
    """Firebase ID tokens; admins carry the ``admin`` claim or are listed in ADMIN_UIDS."""

    def __init__(self, admin_uids: set[str] | None = None, app: firebase_admin.App | None = None) -> None:
        self.admin_uids = set(admin_uids or ())
        self.app = app or firebase_app()

    def verify(self, token: str) -> Principal:
        try:
            claims = firebase_auth.verify_id_token(token, app=self.app)
        except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.CertificateFetchError) as exc:
            log.warning("Firebase token verification failed: %s", exc)
            raise Unauthorized("invalid token") from exc
        uid = str(claims.get("uid") or claims.get("sub") or "")
        if not uid:
            raise Unauthorized("token carries no uid")
        return Principal(
            uid=uid,
            email=claims.get("email"),
            is_admin=claims.get("admin") is True or uid in self.admin_uids,
        )


def build_verifier(backend: str) -> TokenVerifier:
    backend = (backend or "static").strip().lower()
    if backend == "firebase":
        return FirebaseTokenVerifier(settings.admin_uid_set)
    if backend == "static":
        return StaticTokenVerifier(settings.api_token_map, settings.admin_uid_set)
    raise ValueError(f"unknown AUTH_BACKEND {backend!r}")


def require_principal(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Principal:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise Unauthorized("missing bearer token")
    verifier: TokenVerifier = request.app.state.verifier
    return verifier.verify(token)
