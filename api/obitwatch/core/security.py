import hmac
import re

from fastapi import Depends, Header, HTTPException, Request, status

from obitwatch.core.config import Settings, get_settings

BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def parse_bearer_token(authorization: str | None) -> str | None:
    """Accept ``Bearer <token>`` or a raw token."""
    if not authorization:
        return None
    raw = authorization.strip()
    match = BEARER_RE.match(raw)
    token = match.group(1).strip() if match else raw
    return token or None


def is_manual_override(authorization: str | None, settings: Settings) -> bool:
    token = parse_bearer_token(authorization)
    if not token or not settings.run_secret:
        return False
    return hmac.compare_digest(token.encode("utf-8"), settings.run_secret.encode("utf-8"))


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("CF-Connecting-IP") or request.headers.get("X-Forwarded-For")
    if forwarded:
        first_hop = forwarded.split(",", maxsplit=1)[0].strip()
        if first_hop:
            return first_hop
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


async def require_run_token(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> str:
    if not settings.run_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="run secret is not configured",
        )
    if not is_manual_override(authorization, settings):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return "operator"
