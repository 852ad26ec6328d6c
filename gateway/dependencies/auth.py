"""
Authentication dependencies for FastAPI.

SECURITY: Routes acting on an instance MUST pass the resolved caller ID
down to the instance service, which rejects non-owners with AccessDenied.
"""
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from gateway.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


class Caller(BaseModel):
    """Resolved identity of the API caller."""
    user_id: int


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Caller:
    """
    Dependency that requires valid JWT token.
    
    Returns the caller if valid, raises 401 if invalid.
    
    Usage:
        @app.get("/protected")
        async def protected_route(caller: Caller = Depends(get_current_user)):
            ...
    """
    jwt_service = JWTService()
    
    user_id = jwt_service.resolve_caller(credentials.credentials)
    
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    
    request.state.user_id = user_id
    return Caller(user_id=user_id)


async def get_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Dependency extracting the instance API key sent by the connector."""
    return x_api_key
