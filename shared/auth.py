import os
from typing import Any, Dict, Optional

from jose import jwt, JWTError

JWT_SECRET = os.getenv("JWT_SECRET", "demo_secret")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")


def decode_token(token: str, secret: str = None) -> Optional[Dict[str, Any]]:
    """Identity carried by a bearer token, or None if it does not verify."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, secret or JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub") or not payload.get("role"):
        return None
    return {
        "id": payload.get("sub"),
        "role": payload.get("role"),
        "restaurant_id": payload.get("restaurant_id"),
    }
