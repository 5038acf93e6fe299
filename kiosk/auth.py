from fastapi import Header, HTTPException
from jose import JWTError, jwt

from kiosk.config import JWT_SECRET


def verify_operator(authorization: str = Header(None)):
    """Operator-only endpoints (terminal setup, order completion) need a signed bearer token."""
    if not authorization or not JWT_SECRET:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError(scheme)
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
