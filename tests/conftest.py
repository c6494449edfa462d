import os
import io
import tempfile
from datetime import date

import pytest

# アプリのimport前にテスト用の保存先・ログ出力先を設定する
TEST_ROOT = tempfile.mkdtemp(prefix="campus_lost_found_test_")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-campus-lost-found-suite")
os.environ.setdefault("STORAGE_ROOT", os.path.join(TEST_ROOT, "static"))
os.environ.setdefault("LOG_DIR", os.path.join(TEST_ROOT, "logs"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(TEST_ROOT, 'app.db')}")

from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from campus_lost_found.config import Settings, get_settings
from campus_lost_found.database import Base, get_db
from campus_lost_found.main import app
from campus_lost_found.models import Item, ItemStatus, ItemType, User, UserRole
from campus_lost_found.rate_limit import limiter
from campus_lost_found.security import security_manager

# テスト用データベース
SQLALCHEMY_DATABASE_URL = f"sqlite:///{os.path.join(TEST_ROOT, 'test.db')}"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

test_settings = Settings(
    database_url=SQLALCHEMY_DATABASE_URL,
    secret_key=os.environ["SECRET_KEY"],
    storage_root=os.environ["STORAGE_ROOT"],
    log_dir=os.environ["LOG_DIR"],
    max_images=2,
)

# bcryptのコストが高いため、テストユーザーのハッシュは使い回す
TEST_PASSWORD = "password123"
TEST_PASSWORD_HASH = security_manager.hash_password(TEST_PASSWORD)

SAMPLE_QUESTIONS = [
    {"question": "What color is it?", "answer": "Black"},
    {"question": "What brand is it?", "answer": "Samsung"},
    {"question": "What is the wallpaper?", "answer": "Mountain landscape"},
    {"question": "Any stickers?", "answer": "Blue star sticker"},
    {"question": "What case does it have?", "answer": "Leather wallet case"},
]


def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


def override_get_settings():
    return test_settings


app.dependency_overrides[get_db] = override_get_db
app.dependency_overrides[get_settings] = override_get_settings


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """テスト間でIP単位のリクエスト数を持ち越さない"""
    limiter.reset()
    yield


@pytest.fixture(scope="function")
def setup_database():
    """テスト用データベースのセットアップ"""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(setup_database):
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(setup_database):
    """テストクライアント"""
    return TestClient(app)


def make_user(db, student_id, email, role=UserRole.STUDENT, is_verified=True, first_name="Test", last_name="User"):
    user = User(
        student_id=student_id,
        email=email,
        password_hash=TEST_PASSWORD_HASH,
        first_name=first_name,
        last_name=last_name,
        phone="090-0000-0000",
        role=role,
        is_verified=is_verified,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_item(db, reporter, questions=None, is_verified=True, status=ItemStatus.ACTIVE, title="Black smartphone"):
    item = Item(
        reporter_id=reporter.id,
        type=ItemType.FOUND,
        status=status,
        title=title,
        description="Found near the entrance",
        category="Electronics",
        location="Main Library",
        date_lost_found=date(2024, 3, 1),
        contact_info={"preferred_contact": "phone", "note": "Library front desk"},
        verification_questions=SAMPLE_QUESTIONS if questions is None else questions,
        reward_amount=0,
        images=[],
        is_verified=is_verified,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def auth_headers(user):
    return {"Authorization": f"Bearer {security_manager.create_access_token(user)}"}


def png_bytes(color="red"):
    buffer = io.BytesIO()
    Image.new("RGB", (20, 20), color=color).save(buffer, "PNG")
    return buffer.getvalue()


@pytest.fixture
def owner(db):
    return make_user(db, "S1001", "owner@campus.edu", first_name="Olivia", last_name="Owner")


@pytest.fixture
def claimant(db):
    return make_user(db, "S1002", "claimant@campus.edu", first_name="Carl", last_name="Claimant")


@pytest.fixture
def stranger(db):
    return make_user(db, "S1003", "stranger@campus.edu", first_name="Sam", last_name="Stranger")


@pytest.fixture
def admin(db):
    return make_user(db, "A0001", "admin@campus.edu", role=UserRole.ADMIN)


@pytest.fixture
def item(db, owner):
    return make_item(db, owner)


@pytest.fixture
def sample_image():
    """テスト用画像ファイル"""
    return png_bytes()
