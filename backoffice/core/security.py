from datetime import datetime, timedelta, timezone
from jose import jwt
from backoffice.core.config import settings
from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

def hash_password(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)

def create_jwt(payload: dict, secret: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    data = payload.copy()
    data.update({"iat": int(now.timestamp()), "exp": int((now + expires_delta).timestamp())})
    return jwt.encode(data, secret, algorithm="HS256")

def create_admin_token(subject: str, role: str = "ADMIN") -> str:
    return create_jwt(
        {"sub": subject, "role": role},
        settings.ADMIN_JWT_SECRET,
        timedelta(minutes=settings.ADMIN_JWT_TTL_MINUTES),
    )

def decode_jwt(token: str, secret: str) -> dict:
    return jwt.decode(token, secret, algorithms=["HS256"])
