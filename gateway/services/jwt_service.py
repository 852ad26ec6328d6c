"""
JWT token service for caller resolution.

Account login lives outside the gateway; this service only mints and
verifies the bearer tokens that identify a caller's user ID.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from gateway.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""
    
    def create_token(self, user_id: int, email: str | None = None) -> str:
        """
        Create a JWT token for a user.
        
        Args:
            user_id: User's numeric ID
            email: User's email (optional)
            
        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)
        
        payload = {
            "sub": str(user_id),
            "exp": expires
        }
        if email:
            payload["email"] = email
        
        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    
    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.
        
        Args:
            token: JWT token string
            
        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            payload = jwt.decode(
                token, 
                settings.JWT_SECRET_KEY, 
                algorithms=[settings.JWT_ALGORITHM]
            )
            return payload
        except JWTError:
            return None

    def resolve_caller(self, token: str) -> int | None:
        """Resolve a bearer token to the caller's user ID, or None."""
        payload = self.verify_token(token)
        if not payload:
            return None
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            return None
