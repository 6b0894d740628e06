"""
auth.py
Bearer token handling for the subscription API. The mobile app sends the access
token it got at login; every subscription endpoint resolves it to a User here.
"""

from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session
from datetime import datetime, timedelta

from db import get_db
from models import User
from config import UserAuth, get_logger

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    claims = dict(data)
    lifetime = expires_delta or timedelta(minutes=UserAuth.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims["exp"] = datetime.utcnow() + lifetime
    return jwt.encode(claims, UserAuth.SECRET_KEY, algorithm=UserAuth.ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode and check a token, raising 401 when it is expired, forged or missing claims"""
    try:
        claims = jwt.decode(token, UserAuth.SECRET_KEY, algorithms=[UserAuth.ALGORITHM])
    except ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except JWTError:
        raise _unauthorized()

    if claims.get("user_id") is None:
        raise _unauthorized()
    return claims


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise _unauthorized("Not authenticated")

    claims = decode_access_token(credentials.credentials)
    user = db.query(User).filter(User.id == claims["user_id"]).first()
    if user is None:
        logger.warning(f"Token for unknown user {claims['user_id']}")
        raise _unauthorized()
    return user
