import re
import json
import math
import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from campus_lost_found.config import Settings, get_settings
from campus_lost_found.database import get_db
from campus_lost_found.errors import (
    AuthorizationError, LostFoundError, NotFoundError, StateConflictError, StorageError, ValidationError,
)
from campus_lost_found.models import (
    Category, Claim, ClaimStatus, Item, ItemStatus, ItemType, Location, User,
)
from campus_lost_found.schemas import (
    ItemListResponse, ItemOwnerView, ItemPublic, ItemResponse, ItemUpdate,
    MessageResponse, Pagination, VerificationQuestion,
)
from campus_lost_found.security import get_current_user, security_manager
from campus_lost_found.storage import IMAGE_FIELD, FileStorage, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/items", tags=["items"])

SORTABLE_COLUMNS = {
    "created_at": Item.created_at,
    "date_lost_found": Item.date_lost_found,
    "title": Item.title,
    "view_count": Item.view_count,
}
TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")
OPEN_CLAIM_STATUSES = (
    ClaimStatus.PENDING_VERIFICATION,
    ClaimStatus.AWAITING_PROOF,
    ClaimStatus.PROOF_SUBMITTED,
)
APPROVED_CLAIM_STATUSES = (ClaimStatus.APPROVED, ClaimStatus.COMPLETED)
# claimed・returnedはクレームの承認・完了でのみ設定される
OWNER_SETTABLE_STATUSES = (ItemStatus.ACTIVE, ItemStatus.CLOSED)


def parse_item_type(value: Optional[str]) -> Optional[ItemType]:
    if not value:
        return None
    try:
        return ItemType(value)
    except ValueError:
        raise ValidationError('Type must be either "lost" or "found"')


def parse_item_status(value: Optional[str]) -> Optional[ItemStatus]:
    if not value:
        return None
    try:
        return ItemStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in ItemStatus)
        raise ValidationError(f"Status must be one of: {allowed}")


def _parse_json_field(raw: Optional[str], default, expected_type, field_name: str):
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError(f"Invalid JSON format in {field_name}")
    if not isinstance(value, expected_type):
        raise ValidationError(f"Invalid {field_name} format")
    return value


def parse_verification_questions(raw: Optional[str]) -> List[dict]:
    questions = _parse_json_field(raw, [], list, "verification questions")
    try:
        return [VerificationQuestion.model_validate(q).model_dump() for q in questions]
    except PydanticValidationError:
        raise ValidationError("Each verification question needs a non-empty question and answer")


def to_public(item: Item) -> ItemPublic:
    return ItemPublic.model_validate(item).model_copy(
        update={"reporter_name": item.reporter.full_name if item.reporter else None}
    )


def to_owner_view(item: Item, pending_claims: int = 0, approved_claims: int = 0) -> ItemOwnerView:
    return ItemOwnerView.model_validate(item).model_copy(update={
        "reporter_name": item.reporter.full_name if item.reporter else None,
        "pending_claims": pending_claims,
        "approved_claims": approved_claims,
    })


def build_pagination(page: int, limit: int, total: int) -> Pagination:
    total_pages = math.ceil(total / limit) if total else 0
    return Pagination(
        current_page=page,
        total_pages=total_pages,
        total_items=total,
        limit=limit,
        has_next_page=page < total_pages,
        has_prev_page=page > 1,
    )


def _get_owned_item(db: Session, item_id: int, user: User) -> Item:
    item = db.get(Item, item_id)
    if item is None:
        raise NotFoundError("Item not found")
    if item.reporter_id != user.id:
        raise AuthorizationError("You can only modify your own items")
    return item


def _check_owner_status_change(item: Item, new_status: ItemStatus):
    """登録者による状態変更がクレームの状態と矛盾しないか確認する"""
    if new_status == item.status:
        return
    if new_status not in OWNER_SETTABLE_STATUSES:
        raise StateConflictError(f"Item status {new_status.value} is set by claim approval or completion")
    if item.status not in OWNER_SETTABLE_STATUSES:
        raise StateConflictError(f"Item is already {item.status.value} and cannot be changed")
    if new_status == ItemStatus.ACTIVE and any(c.status in APPROVED_CLAIM_STATUSES for c in item.claims):
        raise StateConflictError("Item cannot be reopened while a claim is approved")


@router.post("", response_model=ItemResponse, status_code=201)
def create_item(
    item_type: str = Form(..., alias="type"),
    title: str = Form(...),
    description: str = Form(...),
    location: str = Form(...),
    date_lost_found: date = Form(..., alias="dateLostFound"),
    time_lost_found: Optional[str] = Form(None, alias="timeLostFound"),
    category: Optional[str] = Form(None),
    contact_info: Optional[str] = Form(None, alias="contactInfo"),
    verification_questions: Optional[str] = Form(None, alias="verificationQuestions"),
    reward_amount: float = Form(0, alias="rewardAmount"),
    images: Optional[List[UploadFile]] = File(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """
    遺失物・拾得物を登録する

    登録直後は未承認で、管理者が承認するまで一覧には表示されない。
    """
    parsed_type = parse_item_type(item_type)
    if parsed_type is None:
        raise ValidationError("Missing required fields: type")

    title = security_manager.sanitize_input(title)
    description = security_manager.sanitize_input(description)
    location = security_manager.sanitize_input(location)
    if not title or not description or not location:
        raise ValidationError("Missing required fields: title, description and location are required")
    if time_lost_found and not TIME_PATTERN.match(time_lost_found):
        raise ValidationError("Time must be in HH:MM format")
    if reward_amount < 0:
        raise ValidationError("Reward amount cannot be negative")

    parsed_contact = _parse_json_field(contact_info, {}, dict, "contact info")
    parsed_questions = parse_verification_questions(verification_questions)

    uploads = [f for f in (images or []) if f.filename]
    if len(uploads) > settings.max_images:
        raise ValidationError(f"You can upload at most {settings.max_images} images")

    saved_paths = []
    try:
        for upload in uploads:
            saved_paths.append(storage.save(IMAGE_FIELD, upload))

        item = Item(
            reporter_id=user.id,
            type=parsed_type,
            status=ItemStatus.ACTIVE,
            title=title,
            description=description,
            category=security_manager.sanitize_input(category) or None,
            location=location,
            date_lost_found=date_lost_found,
            time_lost_found=time_lost_found or None,
            contact_info=parsed_contact,
            verification_questions=parsed_questions,
            reward_amount=reward_amount,
            images=saved_paths,
            is_verified=False,
        )
        db.add(item)
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Failed to store item")
            raise StorageError(str(e)) from e
    except LostFoundError:
        # 保存済みの画像を削除してから失敗を返す
        for path in saved_paths:
            storage.delete(path)
        raise

    db.refresh(item)
    logger.info(f"New {parsed_type.value} item created: {item.title} by {user.email}")
    return ItemResponse(
        message=f"{parsed_type.value.capitalize()} item reported successfully! "
                "It will be visible to others after admin verification.",
        item=to_owner_view(item),
    )


@router.get("", response_model=ItemListResponse)
def list_items(
    type: Optional[str] = None,
    category: Optional[str] = None,
    location: Optional[str] = None,
    search: Optional[str] = None,
    status: Optional[str] = "active",
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    sort_by: str = Query("created_at", alias="sortBy"),
    sort_order: str = Query("DESC", alias="sortOrder"),
    db: Session = Depends(get_db),
):
    """公開一覧（管理者承認済みのみ）"""
    query = db.query(Item).filter(Item.is_verified.is_(True))

    item_type = parse_item_type(type)
    if item_type:
        query = query.filter(Item.type == item_type)
    item_status = parse_item_status(status)
    if item_status:
        query = query.filter(Item.status == item_status)
    if category:
        query = query.filter(Item.category == category)
    if location:
        query = query.filter(Item.location.contains(location))
    if search:
        query = query.filter(or_(Item.title.contains(search), Item.description.contains(search)))

    column = SORTABLE_COLUMNS.get(sort_by)
    if column is None:
        raise ValidationError(f"sortBy must be one of: {', '.join(SORTABLE_COLUMNS)}")
    order = column.asc() if sort_order.upper() == "ASC" else column.desc()

    total = query.count()
    items = query.order_by(order, Item.id.desc()).offset((page - 1) * limit).limit(limit).all()

    return ItemListResponse(
        items=[to_public(item) for item in items],
        pagination=build_pagination(page, limit, total),
    )


@router.get("/user/my-items")
def my_items(
    type: Optional[str] = None,
    status: Optional[str] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(Item).filter(Item.reporter_id == user.id)
    item_type = parse_item_type(type)
    if item_type:
        query = query.filter(Item.type == item_type)
    item_status = parse_item_status(status)
    if item_status:
        query = query.filter(Item.status == item_status)
    items = query.order_by(Item.created_at.desc(), Item.id.desc()).all()

    # 物品ごとのクレーム件数を状態別に集計
    counts = {}
    if items:
        rows = (
            db.query(Claim.item_id, Claim.status, func.count(Claim.id))
            .filter(Claim.item_id.in_([i.id for i in items]))
            .group_by(Claim.item_id, Claim.status)
            .all()
        )
        for item_id, claim_status, count in rows:
            pending, approved = counts.get(item_id, (0, 0))
            if claim_status in OPEN_CLAIM_STATUSES:
                pending += count
            elif claim_status in APPROVED_CLAIM_STATUSES:
                approved += count
            counts[item_id] = (pending, approved)

    return {
        "success": True,
        "items": [to_owner_view(item, *counts.get(item.id, (0, 0))) for item in items],
    }


@router.get("/meta/categories")
def list_categories(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    rows = db.query(Category).filter(Category.is_active.is_(True)).order_by(Category.name).all()
    if rows:
        categories = [{"category_id": c.id, "name": c.name, "description": c.description} for c in rows]
    else:
        logger.info("Categories table is empty, using configured defaults")
        categories = [
            {"category_id": index, "name": name, "description": None}
            for index, name in enumerate(settings.default_categories, start=1)
        ]
    return {"success": True, "categories": categories}


@router.get("/meta/locations")
def list_locations(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    rows = db.query(Location).filter(Location.is_active.is_(True)).order_by(Location.name).all()
    if rows:
        locations = [{"location_id": l.id, "name": l.name, "building": l.building} for l in rows]
    else:
        logger.info("Locations table is empty, using configured defaults")
        locations = [
            {"location_id": index, "name": name, "building": building}
            for index, (name, building) in enumerate(settings.default_locations, start=1)
        ]
    return {"success": True, "locations": locations}


@router.get("/{item_id}")
def get_item(item_id: int, db: Session = Depends(get_db)):
    item = db.query(Item).filter(Item.id == item_id, Item.is_verified.is_(True)).first()
    if item is None:
        raise NotFoundError("Item not found")

    db.query(Item).filter(Item.id == item_id).update(
        {Item.view_count: Item.view_count + 1}, synchronize_session=False
    )
    db.commit()
    db.refresh(item)
    return {"success": True, "item": to_public(item)}


@router.put("/{item_id}", response_model=ItemResponse)
def update_item(
    item_id: int,
    request: ItemUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """登録者による更新。確認質問は変更できない"""
    item = _get_owned_item(db, item_id, user)
    if request.title is not None:
        item.title = security_manager.sanitize_input(request.title)
    if request.description is not None:
        item.description = security_manager.sanitize_input(request.description)
    if request.status is not None:
        _check_owner_status_change(item, request.status)
        item.status = request.status
    db.commit()
    db.refresh(item)
    return ItemResponse(message="Item updated successfully", item=to_owner_view(item))


@router.delete("/{item_id}", response_model=MessageResponse)
def delete_item(
    item_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
):
    item = _get_owned_item(db, item_id, user)
    paths = list(item.images or []) + [c.proof_document for c in item.claims if c.proof_document]
    db.delete(item)
    db.commit()
    for path in paths:
        storage.delete(path)
    logger.info(f"Item {item_id} deleted by owner {user.id}")
    return MessageResponse(message="Item deleted successfully")
