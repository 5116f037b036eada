import hmac

from fastapi import HTTPException, Request

from pingbuoy.app.core.config import settings


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: The incoming request

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin_in_production(request: Request) -> str:
    """Validate the admin token for operational endpoints in production.

    Outside production the endpoints are open so that local debugging
    needs no credentials.

    Raises:
        HTTPException: 401 if the token is missing or invalid in production
    """
    if not settings.is_production:
        return "anonymous"

    token = get_bearer_token(request) or ""
    expected_token = settings.admin_token

    # Always compare to keep timing independent of which check failed
    valid = hmac.compare_digest(token.encode(), expected_token.encode())
    if not expected_token or not valid:
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
