from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, WebSocket, status

from jobchat.core.auth import Principal
from jobchat.core.config import Settings, get_settings

ACCESS_TOKEN_QUERY_PARAM = "access_token"


async def get_current_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    return await resolve_principal(authorization, settings)


async def resolve_principal(authorization: str | None, settings: Settings) -> Principal:
    """Return the Supabase user behind a bearer header or raise 401/503."""

    token = _bearer_token(authorization)
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="identity provider is not configured")

    user = await _fetch_supabase_user(settings, token)
    return _principal_from_user(user)


def websocket_authorization(websocket: WebSocket) -> str | None:
    """Browsers cannot set headers on a WebSocket handshake, so the token may come as a query parameter."""

    header = websocket.headers.get("authorization")
    if header:
        return header
    token = websocket.query_params.get(ACCESS_TOKEN_QUERY_PARAM)
    return f"Bearer {token}" if token else None


def _bearer_token(authorization: str | None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="authentication requires bearer token")
    token = token.strip()
    if not token:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")
    return token


async def _fetch_supabase_user(settings: Settings, token: str) -> dict[str, Any]:
    async with httpx.AsyncClient(
        base_url=str(settings.supabase_url).rstrip("/"),
        timeout=settings.auth_timeout_seconds,
        headers={"apikey": str(settings.supabase_anon_key)},
    ) as client:
        try:
            response = await client.get("/auth/v1/user", headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as exc:  # pragma: no cover - network dependent
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="identity provider unreachable") from exc

    if response.status_code in {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN}:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if not response.is_success:
        raise HTTPException(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"identity provider answered {response.status_code}",
        )

    user = response.json()
    if not isinstance(user, dict):
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="identity provider returned no user")
    return user


def _principal_from_user(user: dict[str, Any]) -> Principal:
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    email = user.get("email")
    return Principal(
        subject=user_id,
        role=_account_kind(user),
        email=email if isinstance(email, str) and email else None,
    )


def _account_kind(user: dict[str, Any]) -> str:
    # Supabase keeps the account kind (student, individual, company) in metadata.
    for key in ("app_metadata", "user_metadata"):
        metadata = user.get(key)
        if not isinstance(metadata, dict):
            continue
        for field in ("role", "user_type"):
            value = metadata.get(field)
            if isinstance(value, str) and value:
                return value
    return "user"
