import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, Boolean, Date, DateTime, Text, Numeric, JSON,
    ForeignKey, UniqueConstraint, Index, Enum,
)
from sqlalchemy.orm import relationship

from campus_lost_found.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def _enum_column(enum_cls, **kwargs):
    # DBにはメンバー名ではなく値（クライアントに公開している文字列）を保存する
    return Column(
        Enum(
            enum_cls,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            validate_strings=True,
            length=32,
        ),
        **kwargs
    )


class UserRole(str, enum.Enum):
    STUDENT = "student"
    ADMIN = "admin"


class ItemType(str, enum.Enum):
    LOST = "lost"
    FOUND = "found"


class ItemStatus(str, enum.Enum):
    ACTIVE = "active"
    CLAIMED = "claimed"
    RETURNED = "returned"
    CLOSED = "closed"


class ClaimStatus(str, enum.Enum):
    """クレームの状態。値はAPIで公開されるため変更しないこと"""
    PENDING_VERIFICATION = "pending_verification"
    AWAITING_PROOF = "awaiting_proof"
    PROOF_SUBMITTED = "proof_submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class MatchLevel(str, enum.Enum):
    STRONG = "strong_match"
    PARTIAL = "partial_match"
    WEAK = "weak_match"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True, comment="ユーザーID")
    student_id = Column(String(20), unique=True, nullable=False, comment="学籍番号")
    email = Column(String(100), unique=True, nullable=False, index=True, comment="メールアドレス")
    password_hash = Column(String(255), nullable=False, comment="ハッシュ化パスワード")
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    phone = Column(String(20), nullable=True)
    department = Column(String(100), nullable=True)
    year_of_study = Column(Integer, nullable=True)
    role = _enum_column(UserRole, nullable=False, default=UserRole.STUDENT, comment="student / admin")
    is_verified = Column(Boolean, nullable=False, default=True, comment="アカウント確認済みフラグ")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship("Item", back_populates="reporter", cascade="all, delete-orphan", passive_deletes=True)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"

    def is_admin(self):
        return self.role == UserRole.ADMIN

    def __repr__(self):
        return f"<User {self.id} {self.email} ({self.role.value if self.role else None})>"


class Item(Base):
    __tablename__ = "items"
    __table_args__ = (
        Index("idx_items_type_status", "type", "status"),
        Index("idx_items_verified", "is_verified"),
        Index("idx_items_created_at", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, comment="拾得物・遺失物ID")
    reporter_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = _enum_column(ItemType, nullable=False, comment="lost / found")
    status = _enum_column(ItemStatus, nullable=False, default=ItemStatus.ACTIVE)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(50), nullable=True)
    location = Column(String(100), nullable=False)
    date_lost_found = Column(Date, nullable=False)
    time_lost_found = Column(String(8), nullable=True, comment="HH:MM[:SS]")
    contact_info = Column(JSON, nullable=False, default=dict, comment="連絡方法などの自由形式情報")
    verification_questions = Column(JSON, nullable=False, default=list, comment="[{question, answer}] 作成後は変更不可")
    reward_amount = Column(Numeric(10, 2), nullable=False, default=0)
    images = Column(JSON, nullable=False, default=list, comment="画像の相対パス一覧")
    is_verified = Column(Boolean, nullable=False, default=False, comment="管理者承認済み（公開可否）")
    admin_notes = Column(Text, nullable=True)
    view_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    reporter = relationship("User", back_populates="items")
    claims = relationship("Claim", back_populates="item", cascade="all, delete-orphan", passive_deletes=True)

    def __repr__(self):
        return f"<Item {self.id} {self.type.value if self.type else None} {self.title!r}>"


class Claim(Base):
    __tablename__ = "claims"
    __table_args__ = (
        # 同じ利用者が同じ物品に二重にクレームすることを防ぐ
        UniqueConstraint("item_id", "claimant_id", name="uq_claims_item_claimant"),
        Index("idx_claims_status", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, comment="クレームID")
    item_id = Column(Integer, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    claimant_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    item_owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = _enum_column(ClaimStatus, nullable=False, default=ClaimStatus.PENDING_VERIFICATION)
    match_level = _enum_column(MatchLevel, nullable=False)
    verification_answers = Column(JSON, nullable=False, default=list, comment="回答照合結果のスナップショット")
    correct_answers = Column(Integer, nullable=False, default=0)
    total_questions = Column(Integer, nullable=False, default=0)
    proof_document = Column(String(255), nullable=True, comment="身分証明書類の相対パス")
    proof_verified = Column(Boolean, nullable=False, default=False)
    admin_notes = Column(Text, nullable=True)
    contact_revealed = Column(Boolean, nullable=False, default=False, comment="連絡先開示可否")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    proof_submitted_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    item = relationship("Item", back_populates="claims")
    claimant = relationship("User", foreign_keys=[claimant_id])
    item_owner = relationship("User", foreign_keys=[item_owner_id])

    @property
    def accuracy_percentage(self):
        if not self.total_questions:
            return 0
        return round(self.correct_answers / self.total_questions * 100)

    def __repr__(self):
        return f"<Claim {self.id} item={self.item_id} {self.status.value if self.status else None}>"


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Location(Base):
    __tablename__ = "locations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    building = Column(String(50), nullable=True)
    floor = Column(String(10), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
