"""
Authentication utilities

Login itself happens upstream (local or Discord OAuth); the ledger only
verifies the bearer JWT and reads the caller's email from it.
"""
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from datetime import datetime, timezone, timedelta
import os

security = HTTPBearer()
JWT_SECRET = os.environ.get('JWT_SECRET', 'coin-ledger-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"


def create_token(email: str, username: str = None) -> str:
    payload = {
        "sub": email,
        "username": username,
        "exp": datetime.now(timezone.utc) + timedelta(days=7)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Return {"email", "username"} for a valid token. Raises HTTPException(401) otherwise."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    email = payload.get("sub")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token")
    return {"email": email, "username": payload.get("username")}


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify JWT token and return current user"""
    return decode_token(credentials.credentials)
