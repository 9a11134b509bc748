"""
Listing Service — 認証・認可

トークンの発行は認証サービスの責務。ここでは Bearer JWT を検証して
ユーザー ID を取り出すだけ。
所有者チェックは owns_resource() に集約し、変更系コマンドの前に必ず呼ぶ。
"""

import os

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "secret")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

bearer_scheme = HTTPBearer(auto_error=False)


def decode_user_id(token: str) -> int:
    """JWT を検証し、sub (なければ id) クレームをユーザー ID として返す。"""
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, f"Invalid token: {e}") from e

    subject = payload.get("sub", payload.get("id"))
    try:
        return int(subject)
    except (TypeError, ValueError):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token missing user id") from None


async def current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> int:
    if credentials is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Not authenticated")
    return decode_user_id(credentials.credentials)


def owns_resource(user_id: int, listing: dict) -> bool:
    return listing["seller_id"] == user_id
