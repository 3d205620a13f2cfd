from fastapi import Security
from fastapi_jwt import JwtAccessBearerCookie, JwtAuthorizationCredentials
from datetime import timedelta
from typing import Optional
import logging
import secrets
import uuid

from bookstore.utils.errors import ForbiddenError, Unauthorized
from bookstore.utils.settings import settings

logger = logging.getLogger(__name__)

# 从请求头或cookie中读取访问令牌（优先从请求头读取）
access_security = JwtAccessBearerCookie(
    secret_key=settings.jwt_secret_key,
    auto_error=True,
    access_expires_delta=timedelta(days=2)  # 访问令牌有效期为2天
)


class AuthService:
    @staticmethod
    def create_token(user_id, role: str = "customer") -> str:
        subject = {
            "user_id": str(user_id),
            "role": role,
            "salting": secrets.token_hex(16)
        }
        return access_security.create_access_token(subject=subject)

    @staticmethod
    def user_id_from(credentials: JwtAuthorizationCredentials) -> uuid.UUID:
        """从令牌中取出用户ID"""
        raw: Optional[str] = credentials.subject.get("user_id")
        if not raw:
            raise Unauthorized("Invalid authentication credentials")
        try:
            return uuid.UUID(str(raw))
        except ValueError:
            raise Unauthorized("Invalid authentication credentials")

    @staticmethod
    def is_admin(credentials: JwtAuthorizationCredentials) -> bool:
        if credentials.subject.get("role") == "admin":
            return True
        return str(credentials.subject.get("user_id")) in settings.admin_user_ids


def current_user_id(credentials: JwtAuthorizationCredentials = Security(access_security)) -> uuid.UUID:
    return AuthService.user_id_from(credentials)


def current_admin_id(credentials: JwtAuthorizationCredentials = Security(access_security)) -> uuid.UUID:
    admin_id = AuthService.user_id_from(credentials)
    if not AuthService.is_admin(credentials):
        logger.warning(f"Admin access denied | user：{admin_id}")
        raise ForbiddenError("Admin privileges required", code="PAY021")
    return admin_id
