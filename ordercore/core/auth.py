from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from ordercore.core.config import settings

STAFF_ROLES = ("admin", "staff")

security = HTTPBearer(auto_error=False)

def get_current_identity(creds: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(creds.credentials, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid access token")
    return payload  # contains sub (email), role

def is_staff(identity: dict) -> bool:
    return identity.get("role") in STAFF_ROLES

def require_staff(identity: dict = Depends(get_current_identity)) -> dict:
    if not is_staff(identity):
        raise HTTPException(status_code=403, detail="Staff only")
    return identity

def require_customer(identity: dict = Depends(get_current_identity)) -> dict:
    if identity.get("role") != "customer":
        raise HTTPException(status_code=403, detail="Customers only")
    return identity
