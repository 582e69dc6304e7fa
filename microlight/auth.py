"""
IndieAuth bearer-token gate for Micropub requests.

    UNAUTHENTICATED ──▶ VERIFYING ──▶ AUTHORIZED
                          │
                          └────────▶ REJECTED

No token at all is rejected straight away, without a network call.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from . import network
from .network import ContentType, HTTPClientError, HTTPMethod, HTTPStatus

log = logging.getLogger(__name__)


class AuthState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    VERIFYING = "verifying"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Authorized:
    me: str
    state: AuthState = AuthState.AUTHORIZED


@dataclass(frozen=True)
class Rejected:
    reason: str
    status: HTTPStatus = HTTPStatus.FORBIDDEN
    state: AuthState = AuthState.REJECTED


@dataclass
class RequestContext:
    """
    The parts of an inbound request the Micropub code needs, with the body
    decoded exactly once.
    """

    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    content_type: str = ""
    body: dict[str, Any] = field(default_factory=dict)
    args: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_request(cls, req) -> "RequestContext":
        content_type = req.headers.get("Content-Type", "")
        if network.media_type(content_type) == ContentType.JSON.value:
            data = req.get_json(silent=True)
            body = data if isinstance(data, dict) else {}
        else:
            body = {}
            for key in req.form:
                values = req.form.getlist(key)
                # category[]=a&category[]=b → "category": ["a", "b"]
                if key.endswith("[]"):
                    body[key[:-2]] = values
                else:
                    body[key] = values[0] if len(values) == 1 else values
        return cls(
            method=req.method,
            headers=req.headers,
            content_type=content_type,
            body=body,
            args=req.args.to_dict(),
        )

    def post(self, key: str):
        val = self.body.get(key)
        return val if val else None

    def get(self, key: str):
        val = self.args.get(key)
        return val if val else None


def bearer_token(headers: Mapping[str, str]) -> str | None:
    """
    ``Authorization: Bearer xyz`` → ``"xyz"``; a value without the ``Bearer``
    prefix is taken as the token itself. ``None`` when there is no header.
    """
    value = headers.get("Authorization")
    if value is None:
        return None
    if value.startswith("Bearer"):
        return value.partition(" ")[2].strip()
    return value


def access_token(ctx: RequestContext) -> str | None:
    token = bearer_token(ctx.headers)
    if token is None:
        token = ctx.post("access_token")
    return token


def validate_token(
    token: str, *, token_endpoint: str, base_url: str
) -> Authorized | Rejected:
    """Ask the token endpoint who *token* belongs to; only ``base_url`` passes."""
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": ContentType.JSON.value,
        "Accept": ContentType.JSON.value,
    }
    try:
        resp = network.request(token_endpoint, HTTPMethod.GET, None, headers)
    except HTTPClientError as exc:
        log.warning("Token endpoint unreachable: %s", exc)
        return Rejected(f"Token endpoint unreachable: {exc}")

    if not resp.ok:
        log.info("Token endpoint answered %s", resp.status_code)
        return Rejected(f"Token endpoint answered {resp.status_code}")

    me = resp.body.get("me") if isinstance(resp.body, dict) else None
    if not me:
        return Rejected("Token endpoint did not identify the token owner")
    if me != base_url:
        log.info("Token belongs to %s, not %s", me, base_url)
        return Rejected(f"Token does not belong to {base_url}")
    return Authorized(me=me)


def verify_request(
    ctx: RequestContext, *, token_endpoint: str, base_url: str
) -> Authorized | Rejected:
    token = access_token(ctx)
    if token is None:
        return Rejected("No access token provided", HTTPStatus.UNAUTHORIZED)
    if not token:
        return Rejected("Empty access token", HTTPStatus.UNAUTHORIZED)
    return validate_token(token, token_endpoint=token_endpoint, base_url=base_url)
