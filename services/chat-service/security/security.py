from jose import JWTError, jwt
from models.models import Identity
from configuration.config import SECRET_KEY
from fastapi import Security, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

bearer_scheme = HTTPBearer(auto_error=False)


async def get_identity(credentials: HTTPAuthorizationCredentials = Security(bearer_scheme)) -> Identity:
    """Validates the JWT Bearer token and returns the caller's identity."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing authorization header."
        )
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=["HS256"])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token."
        )
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject."
        )
    return Identity(
        user_id=str(user_id),
        display_name=payload.get("name") or payload.get("displayName"),
        email=payload.get("email"),
        claims=payload,
    )
