"""クレームの状態遷移

状態ごとに許可される操作と遷移先を TRANSITIONS に列挙する。
全ての ClaimStatus がキーとして存在しなければならない（終端状態は空）。
"""
import enum
from typing import Dict, FrozenSet

from campus_lost_found.errors import AuthorizationError, StateConflictError
from campus_lost_found.models import ClaimStatus, MatchLevel


class ClaimAction(str, enum.Enum):
    SUBMIT_PROOF = "submit_proof"
    ACCEPT_PROOF = "accept_proof"
    REJECT_PROOF = "reject_proof"
    APPROVE = "approve"
    REJECT = "reject"
    COMPLETE = "complete"


class Party(str, enum.Enum):
    OWNER = "owner"
    CLAIMANT = "claimant"


TRANSITIONS: Dict[ClaimStatus, Dict[ClaimAction, ClaimStatus]] = {
    ClaimStatus.PENDING_VERIFICATION: {
        ClaimAction.APPROVE: ClaimStatus.APPROVED,
        ClaimAction.REJECT: ClaimStatus.REJECTED,
    },
    ClaimStatus.AWAITING_PROOF: {
        ClaimAction.SUBMIT_PROOF: ClaimStatus.PROOF_SUBMITTED,
        ClaimAction.APPROVE: ClaimStatus.APPROVED,
        ClaimAction.REJECT: ClaimStatus.REJECTED,
    },
    ClaimStatus.PROOF_SUBMITTED: {
        # 再提出は書類の差し替え
        ClaimAction.SUBMIT_PROOF: ClaimStatus.PROOF_SUBMITTED,
        ClaimAction.ACCEPT_PROOF: ClaimStatus.APPROVED,
        ClaimAction.REJECT_PROOF: ClaimStatus.REJECTED,
        ClaimAction.APPROVE: ClaimStatus.APPROVED,
        ClaimAction.REJECT: ClaimStatus.REJECTED,
    },
    ClaimStatus.APPROVED: {
        ClaimAction.COMPLETE: ClaimStatus.COMPLETED,
    },
    ClaimStatus.REJECTED: {},
    ClaimStatus.COMPLETED: {},
}

ALLOWED_PARTIES: Dict[ClaimAction, FrozenSet[Party]] = {
    ClaimAction.SUBMIT_PROOF: frozenset({Party.CLAIMANT}),
    ClaimAction.ACCEPT_PROOF: frozenset({Party.OWNER}),
    ClaimAction.REJECT_PROOF: frozenset({Party.OWNER}),
    ClaimAction.APPROVE: frozenset({Party.OWNER}),
    ClaimAction.REJECT: frozenset({Party.OWNER}),
    ClaimAction.COMPLETE: frozenset({Party.OWNER, Party.CLAIMANT}),
}

_CONFLICT_MESSAGES = {
    ClaimAction.SUBMIT_PROOF: "Proof can only be submitted while the claim is awaiting proof",
    ClaimAction.ACCEPT_PROOF: "There is no submitted proof to verify for this claim",
    ClaimAction.REJECT_PROOF: "There is no submitted proof to verify for this claim",
    ClaimAction.APPROVE: "Only open claims can be approved",
    ClaimAction.REJECT: "Only open claims can be rejected",
    ClaimAction.COMPLETE: "Only approved claims can be marked as completed",
}

TERMINAL_STATUSES = frozenset(s for s, row in TRANSITIONS.items() if not row)


def initial_status(match_level: MatchLevel) -> ClaimStatus:
    """
    提出時の初期状態を決める

    強い一致でも自動承認はせず、部分一致と同様に身分証明書類の提出を求める。
    弱い一致は登録者による手動確認待ちとなる。
    """
    if match_level in (MatchLevel.STRONG, MatchLevel.PARTIAL):
        return ClaimStatus.AWAITING_PROOF
    return ClaimStatus.PENDING_VERIFICATION


def parties_of(claim, user_id: int) -> FrozenSet[Party]:
    parties = set()
    if claim.item_owner_id == user_id:
        parties.add(Party.OWNER)
    if claim.claimant_id == user_id:
        parties.add(Party.CLAIMANT)
    return frozenset(parties)


def ensure_actor(claim, user_id: int, action: ClaimAction) -> None:
    allowed = ALLOWED_PARTIES[action]
    if parties_of(claim, user_id) & allowed:
        return
    if allowed == {Party.OWNER}:
        raise AuthorizationError("Only the item owner can perform this action on the claim")
    if allowed == {Party.CLAIMANT}:
        raise AuthorizationError("Only the claimant can perform this action on the claim")
    raise AuthorizationError("You are not a party to this claim")


def next_status(current: ClaimStatus, action: ClaimAction) -> ClaimStatus:
    try:
        return TRANSITIONS[current][action]
    except KeyError:
        raise StateConflictError(
            f"{_CONFLICT_MESSAGES[action]} (current status: {current.value})"
        ) from None


def transition(claim, user_id: int, action: ClaimAction) -> ClaimStatus:
    """操作者を確認した上で遷移先を返す。状態の書き換えは呼び出し側で行う"""
    ensure_actor(claim, user_id, action)
    return next_status(claim.status, action)


def can_view_contact(claim, user_id: int) -> bool:
    return bool(parties_of(claim, user_id)) and bool(claim.contact_revealed)
