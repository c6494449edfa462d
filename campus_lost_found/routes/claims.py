import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from campus_lost_found import claim_service
from campus_lost_found.database import get_db
from campus_lost_found.errors import LostFoundError, NotFoundError
from campus_lost_found.models import Claim, MatchLevel, User
from campus_lost_found.schemas import (
    ClaimCreate, ClaimRead, ClaimResponse, ClaimSubmitResponse, ClaimSummary,
    ContactRead, ContactResponse, MyClaimListResponse, MyClaimRead,
    OwnerClaimListResponse, OwnerClaimRead, ProofVerification, RejectRequest,
)
from campus_lost_found.security import get_current_user
from campus_lost_found.storage import PROOF_FIELD, FileStorage, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/claims", tags=["claims"])

SUBMIT_MESSAGES = {
    MatchLevel.STRONG: "Strong match! Please upload a proof of identity to complete verification.",
    MatchLevel.PARTIAL: "Partial match. Please upload a proof of identity for the owner to review.",
    MatchLevel.WEAK: "Claim submitted. The item owner will review your answers.",
}


def _item_fields(claim: Claim) -> dict:
    return {
        "has_proof": bool(claim.proof_document),
        "item_title": claim.item.title,
        "item_type": claim.item.type,
        "item_status": claim.item.status,
    }


def to_claim_read(claim: Claim) -> ClaimRead:
    return ClaimRead.model_validate(claim).model_copy(update=_item_fields(claim))


def to_my_claim(claim: Claim) -> MyClaimRead:
    fields = _item_fields(claim)
    fields["item_owner_name"] = claim.item_owner.full_name
    return MyClaimRead.model_validate(claim).model_copy(update=fields)


def to_owner_claim(claim: Claim) -> OwnerClaimRead:
    fields = _item_fields(claim)
    fields["claimant_name"] = claim.claimant.full_name
    return OwnerClaimRead.model_validate(claim).model_copy(update=fields)


@router.post("", response_model=ClaimSubmitResponse, status_code=201)
def submit_claim(
    request: ClaimCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    確認質問への回答を付けてクレームを提出する

    回答は曖昧一致で採点され、一致度に応じて初期状態が決まる。
    どの一致度でも自動承認はされない。
    """
    claim, evaluation = claim_service.submit_claim(db, user, request.item_id, request.verification_answers)
    return ClaimSubmitResponse(
        message=SUBMIT_MESSAGES[evaluation.match_level],
        claim=ClaimSummary(
            claim_id=claim.id,
            status=claim.status,
            match_level=evaluation.match_level,
            correct_answers=evaluation.correct_count,
            total_questions=evaluation.total,
            item_title=claim.item.title,
            accuracy_percentage=evaluation.accuracy_percentage,
        ),
    )


@router.get("/my", response_model=MyClaimListResponse)
def my_claims(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    claims = claim_service.list_my_claims(db, user)
    return MyClaimListResponse(claims=[to_my_claim(c) for c in claims])


@router.get("/for-my-items", response_model=OwnerClaimListResponse)
def claims_for_my_items(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    claims = claim_service.list_claims_for_my_items(db, user)
    return OwnerClaimListResponse(claims=[to_owner_claim(c) for c in claims])


@router.post("/{claim_id}/proof", response_model=ClaimResponse)
def upload_proof(
    claim_id: int,
    proof: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
):
    # 状態と権限を先に確認してからファイルを書き込む
    claim_service.get_party_claim(db, claim_id, user)
    proof_path = storage.save(PROOF_FIELD, proof)
    try:
        claim, previous_path = claim_service.submit_proof(db, claim_id, user, proof_path)
    except LostFoundError:
        storage.delete(proof_path)
        raise

    if previous_path:
        storage.delete(previous_path)
    return ClaimResponse(
        message="Proof document uploaded successfully. The item owner will review it.",
        claim=to_claim_read(claim),
    )


@router.get("/{claim_id}/proof")
def download_proof(
    claim_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
):
    """証明書類はクレームの当事者のみ取得できる"""
    claim = claim_service.get_party_claim(db, claim_id, user)
    path = storage.absolute_path(claim.proof_document) if claim.proof_document else None
    if path is None or not path.exists():
        raise NotFoundError("No proof document uploaded for this claim")
    return FileResponse(path, filename=path.name)


@router.put("/{claim_id}/verify-proof", response_model=ClaimResponse)
def verify_proof(
    claim_id: int,
    request: ProofVerification,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    claim = claim_service.verify_proof(db, claim_id, user, request.verified)
    message = "Proof verified and claim approved" if request.verified else "Proof rejected and claim closed"
    return ClaimResponse(message=message, claim=to_claim_read(claim))


@router.put("/{claim_id}/approve", response_model=ClaimResponse)
def approve_claim(
    claim_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    claim = claim_service.approve_claim(db, claim_id, user)
    return ClaimResponse(
        message="Claim approved. Contact information is now available to both parties.",
        claim=to_claim_read(claim),
    )


@router.put("/{claim_id}/reject", response_model=ClaimResponse)
def reject_claim(
    claim_id: int,
    request: Optional[RejectRequest] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    reason = request.reason if request else None
    claim = claim_service.reject_claim(db, claim_id, user, reason)
    return ClaimResponse(message="Claim rejected", claim=to_claim_read(claim))


@router.put("/{claim_id}/complete", response_model=ClaimResponse)
def complete_claim(
    claim_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    claim = claim_service.complete_claim(db, claim_id, user)
    return ClaimResponse(message="Item marked as returned", claim=to_claim_read(claim))


@router.get("/{claim_id}/contact", response_model=ContactResponse)
def get_contact(
    claim_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    contact = claim_service.get_contact(db, claim_id, user)
    return ContactResponse(contact=ContactRead(**contact))
