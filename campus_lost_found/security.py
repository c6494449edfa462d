import re
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from campus_lost_found.config import get_settings
from campus_lost_found.database import get_db
from campus_lost_found.errors import (
    AuthorizationError, MissingTokenError, TokenExpiredError, MalformedTokenError,
    UserNotFoundError, AccountUnverifiedError, TokenUserMismatchError,
)
from campus_lost_found.logging_config import logging_config
from campus_lost_found.models import User

logger = logging.getLogger(__name__)


class SecurityManager:
    def __init__(self, secret_key: str, algorithm: str = "HS256", access_token_expire_minutes: int = 7 * 24 * 60):
        """セキュリティマネージャーの初期化"""
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.access_token_expire_minutes = access_token_expire_minutes

        # 入力から除去する危険な文字列
        self.dangerous_strings = [
            'javascript:', 'vbscript:', 'data:text/html',
            'data:application/x-javascript', 'onload=', 'onerror='
        ]

    def hash_password(self, password: str) -> str:
        """パスワードをハッシュ化"""
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')

    def verify_password(self, password: str, hashed: str) -> bool:
        """パスワードを検証"""
        try:
            return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
        except ValueError:
            # bcrypt形式でないハッシュ
            logger.warning("Stored password hash is not a bcrypt hash")
            return False

    def create_access_token(self, user: User) -> str:
        """アクセストークンを生成"""
        expire = datetime.now(timezone.utc) + timedelta(minutes=self.access_token_expire_minutes)
        to_encode = {
            "user_id": user.id,
            "email": user.email,
            "role": user.role.value,
            "exp": expire,
        }
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Dict[str, Any]:
        """トークンを検証しペイロードを返す"""
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError()
        except jwt.InvalidTokenError:
            raise MalformedTokenError()

    def authenticate(self, token: Optional[str], db: Session) -> User:
        """
        Bearerトークンから利用者を取得する

        Raises:
            MissingTokenError, TokenExpiredError, MalformedTokenError,
            UserNotFoundError, TokenUserMismatchError, AccountUnverifiedError
        """
        if not token:
            raise MissingTokenError()

        try:
            payload = self.verify_token(token)
        except (TokenExpiredError, MalformedTokenError) as e:
            logging_config.log_security_event("token_rejected", reason=e.code)
            raise

        user_id = payload.get("user_id")
        if not isinstance(user_id, int):
            raise MalformedTokenError()

        user = db.get(User, user_id)
        if user is None:
            raise UserNotFoundError()
        if payload.get("email") != user.email:
            logging_config.log_security_event(
                "token_user_mismatch", user_id=user_id, token_email=payload.get("email")
            )
            raise TokenUserMismatchError()
        if not user.is_verified:
            raise AccountUnverifiedError()
        return user

    def sanitize_input(self, text: Optional[str]) -> Optional[str]:
        """入力テキストのサニタイズ"""
        if not text:
            return text

        # HTMLタグの除去
        text = re.sub(r'<[^>]+>', '', text)

        for dangerous in self.dangerous_strings:
            text = re.sub(re.escape(dangerous), '', text, flags=re.IGNORECASE)

        return text.strip()


_settings = get_settings()
# グローバルセキュリティマネージャーインスタンス
security_manager = SecurityManager(
    secret_key=_settings.secret_key,
    algorithm=_settings.algorithm,
    access_token_expire_minutes=_settings.access_token_expire_minutes,
)

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    token = credentials.credentials if credentials else None
    return security_manager.authenticate(token, db)


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin():
        logging_config.log_security_event("admin_access_denied", user_id=user.id)
        raise AuthorizationError("Admin access required")
    return user
