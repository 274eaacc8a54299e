from typing import Optional, Dict, Any
import hmac
from jose import jwt, JWTError
from fastapi import HTTPException, Security, Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
import structlog

from services.config import settings

logger = structlog.get_logger()
security = HTTPBearer()

class User(BaseModel):
    id: str
    tenant_id: str
    role: str
    email: Optional[str] = None

class AuthService:
    def verify_token(self, token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(
                token,
                settings.jwt_secret,
                algorithms=[settings.jwt_algorithm]
            )
            return payload
        except JWTError as e:
            logger.error("Token verification failed", error=str(e), token_preview=token[:10] + "..." if token else "None")
            raise HTTPException(status_code=401, detail=f"Could not validate credentials: {str(e)}")

    def create_token(self, user_id: str, tenant_id: str, role: str = "member", email: Optional[str] = None) -> str:
        claims = {"sub": user_id, "tenantId": tenant_id, "role": role}
        if email:
            claims["email"] = email
        return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)

auth_service = AuthService()

async def get_current_user(credentials: HTTPAuthorizationCredentials = Security(security)) -> User:
    token = credentials.credentials
    payload = auth_service.verify_token(token)

    sub = payload.get("sub") or payload.get("id")
    tenant_id = payload.get("tenantId") or payload.get("orgId")

    if not sub:
        raise HTTPException(status_code=401, detail="Invalid token payload: missing subject")
    if not tenant_id:
        raise HTTPException(status_code=400, detail="Organization is required")

    return User(
        id=str(sub),
        tenant_id=str(tenant_id),
        role=payload.get("role", "member"),
        email=payload.get("email")
    )

async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role not in ["admin", "owner"]:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return user

async def require_internal_api_key(x_internal_api_key: Optional[str] = Header(None)) -> None:
    """Guards runtime-to-runtime calls such as sync dispatch."""
    if not x_internal_api_key or not hmac.compare_digest(x_internal_api_key, settings.internal_api_key):
        logger.warning("Rejected internal call", has_key=bool(x_internal_api_key))
        raise HTTPException(status_code=401, detail="Invalid internal API key")
