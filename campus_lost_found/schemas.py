from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from campus_lost_found.models import ClaimStatus, ItemStatus, ItemType, MatchLevel, UserRole


# --- 認証 ---

class SignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    student_id: str = Field(..., alias="studentId", min_length=1, max_length=20)
    email: str = Field(..., max_length=100)
    password: str
    first_name: str = Field(..., alias="firstName", min_length=1, max_length=50)
    last_name: str = Field(..., alias="lastName", min_length=1, max_length=50)
    phone: Optional[str] = Field(None, max_length=20)
    department: Optional[str] = Field(None, max_length=100)
    year_of_study: Optional[int] = Field(None, alias="yearOfStudy", ge=0, le=10)


class LoginRequest(BaseModel):
    email: str
    password: str


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    student_id: str
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    department: Optional[str] = None
    year_of_study: Optional[int] = None
    role: UserRole
    is_verified: bool


class AuthResponse(BaseModel):
    success: bool = True
    message: str
    token: str
    user: UserRead


# --- 物品 ---

class VerificationQuestion(BaseModel):
    question: str = Field(..., min_length=1, max_length=255)
    answer: str = Field(..., min_length=1, max_length=255)

    @field_validator("question", "answer")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class ItemUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1)
    status: Optional[ItemStatus] = None


class ItemPublic(BaseModel):
    """公開用。確認質問の答えは含めない"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    reporter_id: int
    type: ItemType
    status: ItemStatus
    title: str
    description: str
    category: Optional[str] = None
    location: str
    date_lost_found: date
    time_lost_found: Optional[str] = None
    contact_info: Dict[str, Any] = {}
    verification_questions: List[str] = []
    reward_amount: float = 0
    images: List[str] = []
    is_verified: bool
    view_count: int
    created_at: datetime
    reporter_name: Optional[str] = None

    @field_validator("reward_amount", mode="before")
    @classmethod
    def decimal_to_float(cls, value):
        return float(value or 0)

    @field_validator("verification_questions", mode="before")
    @classmethod
    def questions_only(cls, value):
        return [q.get("question", "") if isinstance(q, dict) else str(q) for q in (value or [])]


class ItemOwnerView(ItemPublic):
    """登録者本人・管理者向け。確認質問の答えも含む"""
    verification_questions: List[VerificationQuestion] = []
    admin_notes: Optional[str] = None
    pending_claims: int = 0
    approved_claims: int = 0

    @field_validator("verification_questions", mode="before")
    @classmethod
    def questions_only(cls, value):
        return value or []


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    limit: int
    has_next_page: bool
    has_prev_page: bool


class ItemResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    item: ItemOwnerView


class ItemListResponse(BaseModel):
    success: bool = True
    items: List[ItemPublic]
    pagination: Pagination


# --- クレーム ---

class ClaimCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: int = Field(..., alias="itemId")
    verification_answers: List[str] = Field(..., alias="verificationAnswers")


class ProofVerification(BaseModel):
    verified: bool


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class AnswerComparisonRead(BaseModel):
    question: str
    correct_answer: str
    user_answer: str
    is_correct: bool
    similarity: float


class ClaimSummary(BaseModel):
    claim_id: int
    status: ClaimStatus
    match_level: MatchLevel
    correct_answers: int
    total_questions: int
    item_title: str
    accuracy_percentage: int


class ClaimSubmitResponse(BaseModel):
    success: bool = True
    message: str
    claim: ClaimSummary


class ClaimRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    item_id: int
    claimant_id: int
    item_owner_id: int
    status: ClaimStatus
    match_level: MatchLevel
    correct_answers: int
    total_questions: int
    accuracy_percentage: int
    has_proof: bool = False
    proof_verified: bool
    admin_notes: Optional[str] = None
    contact_revealed: bool
    created_at: datetime
    proof_submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    item_title: Optional[str] = None
    item_type: Optional[ItemType] = None
    item_status: Optional[ItemStatus] = None


class MyClaimRead(ClaimRead):
    """申請者向け。確認質問の正解は含めない"""
    item_owner_name: Optional[str] = None


class OwnerClaimRead(ClaimRead):
    """登録者向け。回答の照合結果を含む"""
    verification_answers: List[AnswerComparisonRead] = []
    claimant_name: Optional[str] = None


class ClaimResponse(BaseModel):
    success: bool = True
    message: str
    claim: ClaimRead


class MyClaimListResponse(BaseModel):
    success: bool = True
    claims: List[MyClaimRead]


class OwnerClaimListResponse(BaseModel):
    success: bool = True
    claims: List[OwnerClaimRead]


class ContactRead(BaseModel):
    role: str
    name: str
    email: str
    phone: Optional[str] = None
    preferred_contact: str
    contact_info: Dict[str, Any] = {}
    item_title: str


class ContactResponse(BaseModel):
    success: bool = True
    contact: ContactRead


# --- 管理者 ---

class VerifyFlag(BaseModel):
    is_verified: bool


class RoleUpdate(BaseModel):
    role: UserRole


class AdminUserRead(UserRead):
    created_at: datetime
    total_items: int = 0


class MessageResponse(BaseModel):
    success: bool = True
    message: str
