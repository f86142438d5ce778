import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

TOKEN_MAX_AGE_SECONDS = 2 * 3600


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="csv-upload")


def generate_csrf_token(user_id: int = 1) -> str:
    return _serializer().dumps({"u": user_id, "ts": int(time.time())})


def validate_csrf_token(
    token: Optional[str], user_id: int = 1, max_age: int = TOKEN_MAX_AGE_SECONDS
) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadSignature:
        return False
    return isinstance(data, dict) and data.get("u") == user_id
