"""FastAPI auth dependencies for the publish and inspection routes.

Learn: Callers of the HTTP API are trusted services (the chat app's
persistence path, operators with the CLI), so there is one mechanism:
a Bearer JWT signed with the secret of *this* app's settings. The
WebSocket endpoint does its own check on the ``token`` query param.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from chatcast.auth.jwt import TokenError, verify_token


class CurrentIdentity:
    """The principal behind a request's bearer token."""

    def __init__(self, user_id: str, claims: Optional[dict] = None):
        self.user_id = user_id
        self.claims = claims or {}

    @property
    def principal(self) -> str:
        return self.user_id


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user_optional(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[CurrentIdentity]:
    """Resolve the bearer token if one was sent; None otherwise."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    config = getattr(request.app.state, "config", None)
    secret = config.jwt_secret if config is not None else None
    return authenticate_token(authorization[7:], secret=secret)


async def get_current_user(
    identity: Optional[CurrentIdentity] = Depends(get_current_user_optional),
) -> CurrentIdentity:
    """Require a valid bearer token (401 otherwise)."""
    if identity is None:
        raise _unauthorized("Authentication required")
    return identity


def authenticate_token(token: str, secret: Optional[str] = None) -> CurrentIdentity:
    try:
        payload = verify_token(token, secret=secret)
    except TokenError as e:
        raise _unauthorized(str(e))
    return CurrentIdentity(user_id=str(payload["sub"]), claims=payload)
