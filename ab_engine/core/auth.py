from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

# Clients obtain tokens out of band; tokenUrl only documents the scheme
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")


def require_auth_token(request: Request, token: Annotated[str, Depends(oauth2_scheme)]):
    """
    Dependency function that requires a Bearer token known to the app settings.

    A missing Authorization header is rejected by OAuth2PasswordBearer with
    a 401 before this runs.
    """
    settings = request.app.state.settings

    if not token or token not in settings.TOKENS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token
