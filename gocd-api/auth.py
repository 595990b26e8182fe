import json
import time
from typing import Dict, List, Optional

import jwt
import requests
from fastapi import HTTPException
from jwt.algorithms import RSAAlgorithm

from config import SETTINGS
from models import Actor, Role
from policy import UNAUTHORIZED_MESSAGE

ANONYMOUS_ACTOR_ID = "anonymous"


def _unauthenticated() -> HTTPException:
    return HTTPException(status_code=401, detail={"code": "UNAUTHORIZED", "message": UNAUTHORIZED_MESSAGE})


def _forbidden() -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "FORBIDDEN", "message": UNAUTHORIZED_MESSAGE})


def _misconfigured(setting: str) -> HTTPException:
    return HTTPException(status_code=500, detail={"code": "OIDC_CONFIG_MISSING", "message": f"{setting} is required"})


class SigningKeys:
    """Signing keys published by the identity provider, refetched every few minutes."""

    def __init__(self, ttl_seconds: int = 300) -> None:
        self.ttl_seconds = ttl_seconds
        self._url: Optional[str] = None
        self._fetched_at = 0.0
        self._keys: Dict[str, dict] = {}

    def get(self, url: str, kid: str) -> Optional[dict]:
        if self._url != url or time.time() - self._fetched_at >= self.ttl_seconds:
            self._refresh(url)
        return self._keys.get(kid)

    def _refresh(self, url: str) -> None:
        response = requests.get(url, timeout=5)
        response.raise_for_status()
        self._keys = {key["kid"]: key for key in response.json().get("keys", []) if key.get("kid")}
        self._url = url
        self._fetched_at = time.time()


SIGNING_KEYS = SigningKeys()


def _keys_url() -> str:
    if SETTINGS.oidc_jwks_url:
        return SETTINGS.oidc_jwks_url
    return f"{SETTINGS.oidc_issuer.rstrip('/')}/.well-known/jwks.json"


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise _unauthenticated()
    return token


def _verified_claims(token: str) -> dict:
    if not SETTINGS.oidc_issuer:
        raise _misconfigured("GOCD_OIDC_ISSUER")
    if not SETTINGS.oidc_audience:
        raise _misconfigured("GOCD_OIDC_AUDIENCE")
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except jwt.InvalidTokenError:
        raise _unauthenticated()
    jwk = SIGNING_KEYS.get(_keys_url(), kid) if kid else None
    if not jwk:
        raise _unauthenticated()
    try:
        return jwt.decode(
            token,
            key=RSAAlgorithm.from_jwk(json.dumps(jwk)),
            algorithms=["RS256"],
            audience=SETTINGS.oidc_audience,
            issuer=SETTINGS.oidc_issuer,
        )
    except jwt.InvalidTokenError:
        raise _unauthenticated()


def _claimed_roles(claims: dict) -> List[str]:
    value = claims.get(SETTINGS.oidc_roles_claim, [])
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise _forbidden()
    return [str(item) for item in value]


def resolve_role(roles: List[str]) -> Role:
    # Highest privilege wins when a caller carries several mapped roles.
    for role, configured in (
        (Role.ADMIN, SETTINGS.admin_roles),
        (Role.GROUP_ADMIN, SETTINGS.group_admin_roles),
        (Role.USER, SETTINGS.user_roles),
    ):
        if set(roles) & set(configured):
            return role
    raise _forbidden()


def get_actor(authorization: Optional[str]) -> Actor:
    """Resolve the caller from a bearer token.

    With security disabled every caller, authenticated or not, acts as an
    anonymous administrator.
    """
    if not SETTINGS.security_enabled:
        return Actor(actor_id=ANONYMOUS_ACTOR_ID, role=Role.ADMIN)
    claims = _verified_claims(_bearer_token(authorization))
    roles = _claimed_roles(claims)
    return Actor(
        actor_id=claims.get("preferred_username") or claims.get("sub") or claims.get("email") or "unknown",
        role=resolve_role(roles),
        email=claims.get("email"),
        roles=roles,
    )
