from datetime import datetime, timedelta, timezone
from typing import Optional
import jwt

from app.core.config import Settings, settings


def create_access_token(subject: str | int, expires_minutes: Optional[int] = None,
                        config: Settings = settings) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes or config.JWT_EXPIRE_MINUTES)
    payload = {
        "sub": str(subject),
        "exp": int(expire.timestamp()),
        "iat": int(now.timestamp()),
        "iss": config.APP_NAME,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")
