"""Bearer-token validation for file mutations and metrics scraping."""

from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from ipaddress import ip_address
from typing import Optional

import jwt
import structlog

from .errors import AuthFailure

LOGGER = structlog.get_logger("stratus.security")

UPLOAD_PERMISSION = "upload"
DELETE_PERMISSION = "delete"


def key_id_from_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class Identity:
    """Caller identity extracted from a verified token."""

    subject: str
    permissions: frozenset[str] = field(default_factory=frozenset)

    def allows(self, permission: str) -> bool:
        return permission in self.permissions or "*" in self.permissions


def mint_access_token(
    *,
    secret: str,
    subject: str,
    permissions: Sequence[str],
    ttl_seconds: int = 3600,
    key_id: Optional[str] = None,
) -> str:
    now = int(time.time())
    payload = {
        "sub": subject,
        "iat": now,
        "exp": now + ttl_seconds,
        "permissions": list(permissions),
    }
    headers = {"kid": key_id or key_id_from_secret(secret)}
    return jwt.encode(payload, secret, algorithm="HS256", headers=headers)


def parse_bearer(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthFailure("Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise AuthFailure("Missing bearer token")
    return token


class JwtAuthorizer:
    """Validates HS256 tokens against a primary secret and optional rotation fallbacks."""

    def __init__(self, secrets: str | Sequence[str]) -> None:
        self._secrets = [secrets] if isinstance(secrets, str) else [s for s in secrets if s]
        if not self._secrets:
            raise ValueError("at least one signing secret is required")

    def _ordered_secrets(self, token: str) -> list[str]:
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except jwt.PyJWTError:
            kid = None
        if not kid:
            return self._secrets
        keyed = [secret for secret in self._secrets if key_id_from_secret(secret) == kid]
        return keyed + [secret for secret in self._secrets if secret not in keyed]

    def validate(self, token: str) -> Identity:
        for secret in self._ordered_secrets(token):
            try:
                payload = jwt.decode(token, secret, algorithms=["HS256"])
            except jwt.ExpiredSignatureError as exc:
                raise AuthFailure("Token expired") from exc
            except jwt.PyJWTError:
                continue
            permissions = payload.get("permissions", [])
            if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
                raise AuthFailure("Malformed permissions claim")
            return Identity(subject=str(payload.get("sub", "")), permissions=frozenset(permissions))
        LOGGER.info("token_rejected")
        raise AuthFailure("Invalid token")

    def authorize(self, authorization: str | None, permission: str) -> Identity:
        identity = self.validate(parse_bearer(authorization))
        if not identity.allows(permission):
            LOGGER.warning("permission_denied", subject=identity.subject, permission=permission)
            raise AuthFailure(f"Token lacks {permission} permission", forbidden=True)
        return identity


def authorize_metrics(authorization: str | None, client_host: str | None, token: str | None) -> None:
    """Gate ``/-/metrics``: the scrape token when one is configured, otherwise loopback clients only."""

    if token:
        presented = parse_bearer(authorization)
        if not hmac.compare_digest(presented.encode("utf-8"), token.encode("utf-8")):
            LOGGER.warning("metrics_token_rejected", client=client_host)
            raise AuthFailure("Invalid metrics token")
        return
    try:
        loopback = client_host is not None and ip_address(client_host).is_loopback
    except ValueError:
        loopback = False
    if not loopback:
        LOGGER.warning("metrics_access_denied", client=client_host)
        raise AuthFailure("Metrics access restricted to localhost", forbidden=True)
