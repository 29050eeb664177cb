import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request, status


def require_admin(request: Request, x_admin_token: Optional[str] = Header(None)) -> None:
    """Admin gate: the X-Admin-Token header must match the token the app was created with."""
    expected = request.app.state.admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access is not configured.")
    if not x_admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required.")
    if not secrets.compare_digest(x_admin_token.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin token.")
