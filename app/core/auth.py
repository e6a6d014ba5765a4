"""JWT 认证

- 开启认证时，用户 ID 取自 token 的 sub（所有日志数据按该 ID 隔离）
- 关闭认证时，所有请求视为 ANONYMOUS_USER_ID（单用户本地部署）
"""
from datetime import datetime, timedelta
from hmac import compare_digest
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt

from app.core.config import settings

# 关闭认证时允许不带 token
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/login", auto_error=False)

ALGORITHM = "HS256"


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {"sub": user_id, "exp": expire}
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=ALGORITHM)


def decode_user_id(token: str) -> Optional[str]:
    """token 无效或缺少 sub 时返回 None"""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub") or None


async def authenticate_user(username: str, password: str) -> bool:
    # 单管理员，凭据来自环境变量
    if username != settings.ADMIN_USERNAME:
        return False
    return compare_digest(password, settings.ADMIN_PASSWORD)


async def get_current_user(token: Optional[str] = Depends(oauth2_scheme)) -> str:
    """返回当前请求的用户 ID"""
    if not settings.AUTH_ENABLED:
        return settings.ANONYMOUS_USER_ID

    user_id = decode_user_id(token) if token else None
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


async def login_for_access_token(form_data: OAuth2PasswordRequestForm) -> dict:
    if not settings.AUTH_ENABLED:
        raise HTTPException(status_code=400, detail="Authentication is disabled")

    if not await authenticate_user(form_data.username, form_data.password):
        raise HTTPException(status_code=401, detail="Incorrect username or password")

    return {"access_token": create_access_token(form_data.username), "token_type": "bearer"}
