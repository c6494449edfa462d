"""クレームの作成と状態遷移の永続化

クレームと物品の両方を書き換える操作は一つのトランザクションで確定する。
"""
import time
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from campus_lost_found.claim_lifecycle import (
    ClaimAction, Party, can_view_contact, initial_status, parties_of, transition,
)
from campus_lost_found.errors import (
    LostFoundError, NotFoundError, SelfClaimError, DuplicateClaimError,
    AuthorizationError, StateConflictError, StorageError,
)
from campus_lost_found.logging_config import logging_config
from campus_lost_found.models import Claim, ClaimStatus, Item, ItemStatus, User, utcnow
from campus_lost_found.verification import Evaluation, evaluate_answers

logger = logging.getLogger(__name__)

DEFAULT_REJECT_REASON = "Rejected by item owner"
PROOF_REJECTED_NOTE = "Proof document rejected by item owner"


@contextmanager
def _transaction(db: Session, operation: str):
    start_time = time.time()
    try:
        yield
        db.commit()
    except LostFoundError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logging_config.log_transaction(operation, time.time() - start_time, False)
        logger.exception(f"Claim transaction failed: {operation}")
        raise StorageError(str(e)) from e
    logging_config.log_transaction(operation, time.time() - start_time, True)


def _get_claim(db: Session, claim_id: int, for_update: bool = False) -> Claim:
    query = db.query(Claim).filter(Claim.id == claim_id)
    if for_update:
        query = query.with_for_update()
    claim = query.first()
    if claim is None:
        raise NotFoundError("Claim not found")
    return claim


def _ensure_item_claimable(claim: Claim):
    if claim.item.status != ItemStatus.ACTIVE:
        raise StateConflictError("This item has already been claimed by another request")


def _mark_approved(claim: Claim):
    claim.status = ClaimStatus.APPROVED
    claim.approved_at = utcnow()
    claim.contact_revealed = True
    claim.item.status = ItemStatus.CLAIMED


def submit_claim(db: Session, user: User, item_id: int, answers: Sequence[str]) -> Tuple[Claim, Evaluation]:
    """
    物品に対するクレームを提出する

    重複クレームの判定はDBの一意制約に任せる（事前チェックはしない）。
    """
    item = db.get(Item, item_id)
    if item is None or not item.is_verified or item.status != ItemStatus.ACTIVE:
        raise NotFoundError("Item not found or not available for claiming")
    if item.reporter_id == user.id:
        raise SelfClaimError()

    evaluation = evaluate_answers(item.verification_questions or [], list(answers))

    claim = Claim(
        item_id=item.id,
        claimant_id=user.id,
        item_owner_id=item.reporter_id,
        status=initial_status(evaluation.match_level),
        match_level=evaluation.match_level,
        verification_answers=[c.to_dict() for c in evaluation.comparisons],
        correct_answers=evaluation.correct_count,
        total_questions=evaluation.total,
    )

    with _transaction(db, "submit_claim"):
        db.add(claim)
        try:
            db.flush()
        except IntegrityError:
            raise DuplicateClaimError()

    db.refresh(claim)
    logging_config.log_claim_event(
        "claim_submitted", claim, user.id,
        match_level=evaluation.match_level.value,
        correct=evaluation.correct_count,
        total=evaluation.total,
    )
    return claim, evaluation


def submit_proof(db: Session, claim_id: int, user: User, proof_path: str) -> Tuple[Claim, Optional[str]]:
    """身分証明書類を登録する。差し替え前のパスも返す"""
    with _transaction(db, "submit_proof"):
        claim = _get_claim(db, claim_id, for_update=True)
        claim.status = transition(claim, user.id, ClaimAction.SUBMIT_PROOF)
        previous_path = claim.proof_document
        claim.proof_document = proof_path
        claim.proof_verified = False
        claim.proof_submitted_at = utcnow()

    logging_config.log_claim_event("proof_submitted", claim, user.id, replaced=previous_path is not None)
    return claim, previous_path


def verify_proof(db: Session, claim_id: int, user: User, verified: bool) -> Claim:
    action = ClaimAction.ACCEPT_PROOF if verified else ClaimAction.REJECT_PROOF
    with _transaction(db, "verify_proof"):
        claim = _get_claim(db, claim_id, for_update=True)
        new_status = transition(claim, user.id, action)
        if verified:
            _ensure_item_claimable(claim)
            _mark_approved(claim)
            claim.proof_verified = True
        else:
            claim.status = new_status
            claim.proof_verified = False
            claim.admin_notes = PROOF_REJECTED_NOTE

    logging_config.log_claim_event(action.value, claim, user.id)
    return claim


def approve_claim(db: Session, claim_id: int, user: User) -> Claim:
    with _transaction(db, "approve_claim"):
        claim = _get_claim(db, claim_id, for_update=True)
        transition(claim, user.id, ClaimAction.APPROVE)
        _ensure_item_claimable(claim)
        _mark_approved(claim)

    logging_config.log_claim_event("claim_approved", claim, user.id)
    return claim


def reject_claim(db: Session, claim_id: int, user: User, reason: Optional[str] = None) -> Claim:
    with _transaction(db, "reject_claim"):
        claim = _get_claim(db, claim_id, for_update=True)
        claim.status = transition(claim, user.id, ClaimAction.REJECT)
        claim.admin_notes = reason or DEFAULT_REJECT_REASON

    logging_config.log_claim_event("claim_rejected", claim, user.id, reason=claim.admin_notes)
    return claim


def complete_claim(db: Session, claim_id: int, user: User) -> Claim:
    """物品の返却完了を記録する"""
    with _transaction(db, "complete_claim"):
        claim = _get_claim(db, claim_id, for_update=True)
        claim.status = transition(claim, user.id, ClaimAction.COMPLETE)
        claim.completed_at = utcnow()
        claim.item.status = ItemStatus.RETURNED

    logging_config.log_claim_event("claim_completed", claim, user.id)
    return claim


def get_party_claim(db: Session, claim_id: int, user: User) -> Claim:
    claim = _get_claim(db, claim_id)
    if not parties_of(claim, user.id):
        raise AuthorizationError("You are not a party to this claim")
    return claim


def get_contact(db: Session, claim_id: int, user: User) -> Dict:
    """
    承認済みクレームの相手方の連絡先を返す

    登録者には申請者の連絡先を、申請者には登録者の連絡先と物品の連絡方法を返す。
    """
    claim = get_party_claim(db, claim_id, user)
    if not can_view_contact(claim, user.id):
        raise AuthorizationError("contact information is only available for approved claims")

    item_contact = claim.item.contact_info or {}
    if Party.OWNER in parties_of(claim, user.id):
        counterpart, role = claim.claimant, "claimant"
        contact_info = {}
    else:
        counterpart, role = claim.item_owner, "item_owner"
        contact_info = item_contact

    return {
        "role": role,
        "name": counterpart.full_name,
        "email": counterpart.email,
        "phone": counterpart.phone,
        "preferred_contact": item_contact.get("preferred_contact", "email"),
        "contact_info": contact_info,
        "item_title": claim.item.title,
    }


def list_my_claims(db: Session, user: User) -> List[Claim]:
    return (
        db.query(Claim)
        .filter(Claim.claimant_id == user.id)
        .order_by(Claim.created_at.desc(), Claim.id.desc())
        .all()
    )


def list_claims_for_my_items(db: Session, user: User) -> List[Claim]:
    return (
        db.query(Claim)
        .filter(Claim.item_owner_id == user.id)
        .order_by(Claim.created_at.desc(), Claim.id.desc())
        .all()
    )
