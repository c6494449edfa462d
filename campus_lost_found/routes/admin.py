"""管理者用API（利用者・物品の承認と削除、統計）"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from campus_lost_found.database import get_db
from campus_lost_found.errors import AuthorizationError, NotFoundError
from campus_lost_found.logging_config import logging_config
from campus_lost_found.models import Claim, ClaimStatus, Item, ItemType, User, UserRole
from campus_lost_found.routes.items import (
    build_pagination, parse_item_status, parse_item_type, to_owner_view,
)
from campus_lost_found.schemas import AdminUserRead, MessageResponse, RoleUpdate, VerifyFlag
from campus_lost_found.storage import FileStorage, get_storage
from campus_lost_found.security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def _get_item(db: Session, item_id: int) -> Item:
    item = db.get(Item, item_id)
    if item is None:
        raise NotFoundError("Item not found")
    return item


@router.get("/dashboard-stats")
def dashboard_stats(db: Session = Depends(get_db)):
    total_users = db.query(func.count(User.id)).filter(User.role == UserRole.STUDENT).scalar()
    unverified_users = db.query(func.count(User.id)).filter(User.is_verified.is_(False)).scalar()
    items_by_type = dict(db.query(Item.type, func.count(Item.id)).group_by(Item.type).all())
    pending_items = db.query(func.count(Item.id)).filter(Item.is_verified.is_(False)).scalar()
    claims_by_status = dict(db.query(Claim.status, func.count(Claim.id)).group_by(Claim.status).all())

    recent_items = db.query(Item).order_by(Item.created_at.desc(), Item.id.desc()).limit(5).all()

    return {
        "success": True,
        "stats": {
            "total_users": total_users,
            "unverified_users": unverified_users,
            "lost_items": items_by_type.get(ItemType.LOST, 0),
            "found_items": items_by_type.get(ItemType.FOUND, 0),
            "pending_items": pending_items,
            "claims": {status.value: claims_by_status.get(status, 0) for status in ClaimStatus},
        },
        "recent_items": [
            {
                "id": item.id,
                "title": item.title,
                "type": item.type.value,
                "status": item.status.value,
                "is_verified": item.is_verified,
                "reporter_name": item.reporter.full_name,
                "created_at": item.created_at,
            }
            for item in recent_items
        ],
    }


@router.get("/users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    role: Optional[UserRole] = None,
    db: Session = Depends(get_db),
):
    query = db.query(User)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            User.first_name.ilike(pattern),
            User.last_name.ilike(pattern),
            User.email.ilike(pattern),
            User.student_id.ilike(pattern),
        ))
    if role:
        query = query.filter(User.role == role)

    total = query.count()
    users = query.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit).all()

    item_counts = {}
    if users:
        item_counts = dict(
            db.query(Item.reporter_id, func.count(Item.id))
            .filter(Item.reporter_id.in_([u.id for u in users]))
            .group_by(Item.reporter_id)
            .all()
        )

    return {
        "success": True,
        "users": [
            AdminUserRead.model_validate(u).model_copy(update={"total_items": item_counts.get(u.id, 0)})
            for u in users
        ],
        "pagination": build_pagination(page, limit, total),
    }


@router.put("/users/{user_id}/verify", response_model=MessageResponse)
def verify_user(
    user_id: int,
    request: VerifyFlag,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    user = _get_user(db, user_id)
    user.is_verified = request.is_verified
    db.commit()
    logging_config.log_admin_action(
        admin.id, "user_verification_changed", f"user:{user_id}", is_verified=request.is_verified
    )
    state = "verified" if request.is_verified else "unverified"
    return MessageResponse(message=f"User {state} successfully")


@router.put("/users/{user_id}/role", response_model=MessageResponse)
def update_user_role(
    user_id: int,
    request: RoleUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    user = _get_user(db, user_id)
    if user.id == admin.id and request.role != UserRole.ADMIN:
        raise AuthorizationError("You cannot remove your own admin role")
    user.role = request.role
    db.commit()
    logging_config.log_admin_action(admin.id, "user_role_changed", f"user:{user_id}", role=request.role.value)
    return MessageResponse(message=f"User role updated to {request.role.value}")


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(
    user_id: int,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
):
    """利用者を削除する。登録物品とクレームも連鎖して削除される"""
    user = _get_user(db, user_id)
    if user.is_admin():
        raise AuthorizationError("Admin accounts cannot be deleted")

    email = user.email
    paths = [path for item in user.items for path in (item.images or [])]
    paths += [
        c.proof_document for c in db.query(Claim).filter(Claim.claimant_id == user.id).all() if c.proof_document
    ]
    db.delete(user)
    db.commit()
    for path in paths:
        storage.delete(path)

    logging_config.log_admin_action(admin.id, "user_deleted", f"user:{user_id}", email=email)
    return MessageResponse(message="User deleted successfully")


@router.get("/items")
def list_items(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    type: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    is_verified: Optional[bool] = Query(None, alias="isVerified"),
    db: Session = Depends(get_db),
):
    """未承認を含む全物品の一覧"""
    query = db.query(Item)
    item_type = parse_item_type(type)
    if item_type:
        query = query.filter(Item.type == item_type)
    item_status = parse_item_status(status)
    if item_status:
        query = query.filter(Item.status == item_status)
    if is_verified is not None:
        query = query.filter(Item.is_verified.is_(is_verified))
    if search:
        query = query.filter(or_(Item.title.contains(search), Item.description.contains(search)))

    total = query.count()
    items = query.order_by(Item.created_at.desc(), Item.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "success": True,
        "items": [to_owner_view(item) for item in items],
        "pagination": build_pagination(page, limit, total),
    }


@router.put("/items/{item_id}/verify", response_model=MessageResponse)
def verify_item(
    item_id: int,
    request: VerifyFlag,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    item = _get_item(db, item_id)
    item.is_verified = request.is_verified
    db.commit()
    logging_config.log_admin_action(
        admin.id, "item_verification_changed", f"item:{item_id}", is_verified=request.is_verified
    )
    state = "verified" if request.is_verified else "hidden"
    return MessageResponse(message=f"Item {state} successfully")


@router.delete("/items/{item_id}", response_model=MessageResponse)
def delete_item(
    item_id: int,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
):
    item = _get_item(db, item_id)
    paths = list(item.images or []) + [c.proof_document for c in item.claims if c.proof_document]
    db.delete(item)
    db.commit()
    for path in paths:
        storage.delete(path)

    logging_config.log_admin_action(admin.id, "item_deleted", f"item:{item_id}")
    return MessageResponse(message="Item deleted successfully")
