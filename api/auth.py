from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from pydantic import BaseModel

from libs.common.settings import get_settings


class User(BaseModel):
    uid: str
    email: str
    name: str | None = None
    picture: str | None = None

    def to_context(self) -> dict:
        """User block of the pipeline context."""
        return {"id": self.uid, "email": self.email, "name": self.name or self.email.split("@")[0]}


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

_transport_request = google_requests.Request()


def verify_google_id_token(token: str) -> dict:
    """
    Verify a Google-issued ID token against the configured client id.

    Without ``google_client_id`` the audience is unchecked, which is only
    tolerated in development and test.
    """
    settings = get_settings()
    if not settings.google_client_id and settings.app_env not in ("development", "test"):
        raise google_exceptions.GoogleAuthError(
            f"google_client_id is not configured for {settings.app_env}; refusing tokens for any audience"
        )
    return id_token.verify_oauth2_token(token, _transport_request, settings.google_client_id)


def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        claims = verify_google_id_token(token)
    except (ValueError, google_exceptions.GoogleAuthError) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication credentials: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except Exception as e:
        # Certificate fetch failures and other unexpected verification errors
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Could not validate credentials: {e}",
        )

    if not claims.get("email"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no email claim",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return User(
        uid=claims["sub"],
        email=claims["email"],
        name=claims.get("name"),
        picture=claims.get("picture"),
    )
