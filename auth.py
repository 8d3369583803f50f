from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Config, get_config
from errors import AuthError, ForbiddenError, NotFoundError

ALGORITHM = "HS256"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    is_admin: bool = False


# Helper functions for auth

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, secret_key: str, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60 * 12))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def resolve_token(token: Optional[str], config: Config) -> Optional[AuthContext]:
    """Turn a bearer credential into the caller's identity, or None if absent."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, config.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        raise AuthError("invalid_token", "Could not validate credentials")
    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("invalid_token", "Could not validate credentials")
    return AuthContext(user_id=str(user_id), is_admin=payload.get("role") == "admin")


def require_auth(required: bool = True):
    """Dependency factory: ``required=False`` lets anonymous callers through as None."""

    def dependency(token: Optional[str] = Depends(oauth2_scheme), config: Config = Depends(get_config)):
        auth = resolve_token(token, config)
        if auth is None and required:
            raise AuthError("unauthorized", "Authentication required")
        return auth

    return dependency


def require_admin(auth: AuthContext = Depends(require_auth(True))) -> AuthContext:
    if not auth.is_admin:
        raise ForbiddenError("admin_required", "Administrator access required")
    return auth


def ensure_owner(doc: Optional[dict], auth: AuthContext, what: str = "record") -> dict:
    """Owners and admins may act on a record; anyone else sees a 404."""
    if not doc or (doc.get("user_id") != auth.user_id and not auth.is_admin):
        raise NotFoundError("not_found", f"{what.capitalize()} not found")
    return doc
