"""管理者アカウントの作成・昇格

    python -m campus_lost_found.create_admin --email admin@example.edu --password ... --student-id ADMIN001
"""
import argparse
import getpass
import logging
import sys
from typing import Optional

from sqlalchemy.orm import Session

from campus_lost_found.config import get_settings
from campus_lost_found.database import SessionLocal
from campus_lost_found.main import init_db
from campus_lost_found.models import User, UserRole
from campus_lost_found.security import security_manager

logger = logging.getLogger(__name__)


def create_admin(db: Session, email: str, password: str, student_id: str,
                 first_name: str = "System", last_name: str = "Admin",
                 phone: Optional[str] = None) -> User:
    """
    管理者を作成する。同じメールアドレスの利用者が既にいれば管理者に昇格し、
    パスワードを更新する。
    """
    email = email.strip().lower()
    user = db.query(User).filter(User.email == email).first()
    if user:
        user.role = UserRole.ADMIN
        user.is_verified = True
        user.password_hash = security_manager.hash_password(password)
        logger.info(f"Promoted existing user to admin: {email}")
    else:
        user = User(
            student_id=student_id,
            email=email,
            password_hash=security_manager.hash_password(password),
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            role=UserRole.ADMIN,
            is_verified=True,
        )
        db.add(user)
        logger.info(f"Created admin user: {email}")
    db.commit()
    db.refresh(user)
    return user


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create or promote an administrator account")
    parser.add_argument("--email", required=True)
    parser.add_argument("--student-id", default="ADMIN001")
    parser.add_argument("--password", help="省略時は対話的に入力")
    parser.add_argument("--first-name", default="System")
    parser.add_argument("--last-name", default="Admin")
    parser.add_argument("--phone")
    args = parser.parse_args(argv)

    password = args.password or getpass.getpass("Password: ")
    if len(password) < 6:
        parser.error("password must be at least 6 characters long")

    init_db(get_settings())
    db = SessionLocal()
    try:
        user = create_admin(
            db, args.email, password, args.student_id,
            first_name=args.first_name, last_name=args.last_name, phone=args.phone,
        )
    finally:
        db.close()
    print(f"Admin account ready: {user.email} (id={user.id})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
