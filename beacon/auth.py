"""
beacon/auth.py — 接收端令牌

HS256 JWT：sub = 用户 id，role = student / teacher / admin。
实时通道用 query 参数 token 校验；管理接口用 Authorization: Bearer <token>。
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Header, HTTPException, status

from beacon.config import cfg

ALGORITHM = "HS256"
SECRET_KEY = str(cfg.get("secret", "bge-beacon-dev-secret") or "bge-beacon-dev-secret")
ACCESS_TOKEN_EXPIRE_MINUTES = int(cfg.get("token_expire_minutes", 12 * 60) or 12 * 60)


def create_access_token(user_id: str, role: str = "student", expires_minutes: Optional[int] = None) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes or ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """校验并解码令牌；过期或签名错误抛 jwt.InvalidTokenError。"""
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])


def parse_bearer_user(authorization: str) -> Dict[str, str]:
    text = str(authorization or "").strip()[:2000]
    if not text.lower().startswith("bearer "):
        return {}
    token = text[7:].strip()
    if not token:
        return {}
    try:
        payload = decode_token(token)
    except jwt.InvalidTokenError:
        return {}
    return {
        "user_id": str(payload.get("sub") or "")[:255],
        "role": str(payload.get("role") or "student")[:32],
    }


async def get_current_user(authorization: str = Header(default="")) -> Dict[str, str]:
    user = parse_bearer_user(authorization)
    if not user.get("user_id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="未登录或令牌无效",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
