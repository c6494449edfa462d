import json
import os

import pytest
from sqlalchemy.exc import IntegrityError

from campus_lost_found.create_admin import create_admin
from campus_lost_found.models import Claim, ClaimStatus, Item, ItemStatus, MatchLevel, User, UserRole
from tests.conftest import (
    SAMPLE_QUESTIONS, TEST_PASSWORD, auth_headers, make_item, make_user, png_bytes, test_settings,
)

STRONG_ANSWERS = ["black", "samsung", "Mountain landscape", "blue star sticker", "plastic"]
PARTIAL_ANSWERS = ["black", "samsung", "Mountain landscape", "none", "plastic"]
WEAK_ANSWERS = ["black", "samsung", "city", "none", "plastic"]
PDF_CONTENT = b"%PDF-1.4 student id card"


def submit_claim(client, user, item, answers):
    return client.post(
        "/api/claims",
        json={"itemId": item.id, "verificationAnswers": answers},
        headers=auth_headers(user),
    )


def upload_proof(client, user, claim_id, content=PDF_CONTENT, filename="student-id.pdf", content_type="application/pdf"):
    return client.post(
        f"/api/claims/{claim_id}/proof",
        files={"proof": (filename, content, content_type)},
        headers=auth_headers(user),
    )


def item_form(**overrides):
    form = {
        "type": "found",
        "title": "Blue umbrella",
        "description": "Folding umbrella left in the lecture hall",
        "category": "Other",
        "location": "Lecture Hall A",
        "dateLostFound": "2024-04-10",
        "timeLostFound": "14:30",
        "contactInfo": json.dumps({"preferred_contact": "email"}),
        "verificationQuestions": json.dumps([
            {"question": "What color is the handle?", "answer": "Wooden brown"},
            {"question": "Any pattern?", "answer": "White polka dots"},
        ]),
        "rewardAmount": "0",
    }
    form.update(overrides)
    return form


def documents_count():
    directory = os.path.join(test_settings.storage_root, "documents")
    return len(os.listdir(directory)) if os.path.isdir(directory) else 0


class TestAuthentication:
    """認証機能のテスト"""

    def test_signup_success(self, client):
        response = client.post("/api/auth/signup", json={
            "studentId": "S9001",
            "email": "New.Student@Campus.edu",
            "password": "secret123",
            "firstName": "Nina",
            "lastName": "New",
            "department": "Computer Science",
        })

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["token"]
        assert data["user"]["email"] == "new.student@campus.edu"
        assert data["user"]["role"] == "student"
        assert "password_hash" not in data["user"]

    def test_signup_duplicate_email(self, client, owner):
        response = client.post("/api/auth/signup", json={
            "studentId": "S9002",
            "email": "owner@campus.edu",
            "password": "secret123",
            "firstName": "Dup",
            "lastName": "Licate",
        })

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_signup_short_password(self, client):
        response = client.post("/api/auth/signup", json={
            "studentId": "S9003",
            "email": "short@campus.edu",
            "password": "123",
            "firstName": "Short",
            "lastName": "Password",
        })

        assert response.status_code == 400

    def test_signup_missing_fields(self, client):
        response = client.post("/api/auth/signup", json={"email": "missing@campus.edu"})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["code"] == "VALIDATION_ERROR"
        assert data["error"]

    def test_login_success(self, client, owner):
        response = client.post("/api/auth/login", json={"email": "OWNER@campus.edu", "password": TEST_PASSWORD})

        assert response.status_code == 200
        assert response.json()["user"]["id"] == owner.id

    def test_login_invalid_credentials(self, client, owner):
        response = client.post("/api/auth/login", json={"email": "owner@campus.edu", "password": "wrongpass"})

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_CREDENTIALS"

    def test_login_unverified(self, client, db):
        make_user(db, "S9004", "unverified@campus.edu", is_verified=False)
        response = client.post("/api/auth/login", json={"email": "unverified@campus.edu", "password": TEST_PASSWORD})

        assert response.status_code == 401
        assert response.json()["code"] == "ACCOUNT_UNVERIFIED"

    def test_login_rate_limited(self, client, owner):
        """同一IPからの6回目のログイン試行は429になる"""
        for _ in range(5):
            response = client.post("/api/auth/login", json={"email": "owner@campus.edu", "password": "wrongpass"})
            assert response.status_code == 401

        response = client.post("/api/auth/login", json={"email": "owner@campus.edu", "password": TEST_PASSWORD})

        assert response.status_code == 429
        data = response.json()
        assert data["success"] is False
        assert data["code"] == "RATE_LIMITED"
        assert data["error"] == "Too many authentication attempts, please try again later."

    def test_rate_limit_applies_per_endpoint(self, client, owner):
        """ログインの制限はサインアップや他のAPIに影響しない"""
        for _ in range(6):
            client.post("/api/auth/login", json={"email": "owner@campus.edu", "password": "wrongpass"})

        assert client.get("/api/health").status_code == 200
        response = client.post("/api/auth/signup", json={"email": "missing@campus.edu"})
        assert response.status_code == 400

    def test_me_requires_token(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["code"] == "MISSING_TOKEN"

    def test_me_with_malformed_token(self, client):
        response = client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})

        assert response.status_code == 403
        assert response.json()["code"] == "MALFORMED_TOKEN"

    def test_me(self, client, owner):
        response = client.get("/api/auth/me", headers=auth_headers(owner))

        assert response.status_code == 200
        assert response.json()["user"]["email"] == "owner@campus.edu"


class TestItemRegistration:
    """物品登録のテスト"""

    def test_create_item_with_image(self, client, owner, sample_image):
        response = client.post(
            "/api/items",
            data=item_form(),
            files=[("images", ("umbrella.png", sample_image, "image/png"))],
            headers=auth_headers(owner),
        )

        assert response.status_code == 201
        item = response.json()["item"]
        assert item["is_verified"] is False
        assert item["status"] == "active"
        assert item["time_lost_found"] == "14:30"
        assert len(item["images"]) == 1
        assert item["images"][0].startswith("uploads/")
        # 登録者本人には答えも返す
        assert item["verification_questions"][0]["answer"] == "Wooden brown"
        assert os.path.exists(os.path.join(test_settings.storage_root, item["images"][0]))

    def test_create_item_without_images(self, client, owner):
        response = client.post("/api/items", data=item_form(), headers=auth_headers(owner))

        assert response.status_code == 201
        assert response.json()["item"]["images"] == []

    def test_create_item_requires_login(self, client):
        response = client.post("/api/items", data=item_form())

        assert response.status_code == 401

    def test_create_item_invalid_type(self, client, owner):
        response = client.post("/api/items", data=item_form(type="stolen"), headers=auth_headers(owner))

        assert response.status_code == 400

    def test_create_item_invalid_questions_json(self, client, owner):
        response = client.post(
            "/api/items", data=item_form(verificationQuestions="{not json"), headers=auth_headers(owner)
        )

        assert response.status_code == 400
        assert "JSON" in response.json()["error"]

    def test_create_item_blank_answer(self, client, owner):
        questions = json.dumps([{"question": "Color?", "answer": "   "}])
        response = client.post(
            "/api/items", data=item_form(verificationQuestions=questions), headers=auth_headers(owner)
        )

        assert response.status_code == 400

    def test_create_item_too_many_images(self, client, owner, sample_image):
        files = [("images", (f"{i}.png", sample_image, "image/png")) for i in range(3)]
        response = client.post("/api/items", data=item_form(), files=files, headers=auth_headers(owner))

        assert response.status_code == 400

    def test_create_item_rejects_non_image(self, client, owner, db):
        response = client.post(
            "/api/items",
            data=item_form(),
            files=[("images", ("umbrella.png", b"not really a png", "image/png"))],
            headers=auth_headers(owner),
        )

        assert response.status_code == 400
        assert db.query(Item).count() == 0


class TestItemBrowsing:
    """物品一覧・詳細のテスト"""

    def test_only_verified_items_are_listed(self, client, db, owner):
        make_item(db, owner, title="Visible phone")
        make_item(db, owner, title="Hidden phone", is_verified=False)

        response = client.get("/api/items")

        assert response.status_code == 200
        data = response.json()
        assert [i["title"] for i in data["items"]] == ["Visible phone"]
        assert data["pagination"]["total_items"] == 1

    def test_answers_are_hidden_from_public(self, client, item):
        response = client.get(f"/api/items/{item.id}")

        assert response.status_code == 200
        body = response.json()["item"]
        assert body["verification_questions"] == [q["question"] for q in SAMPLE_QUESTIONS]
        assert "Samsung" not in json.dumps(body)
        assert body["reporter_name"] == "Olivia Owner"

    def test_view_count_increments(self, client, item):
        client.get(f"/api/items/{item.id}")
        response = client.get(f"/api/items/{item.id}")

        assert response.json()["item"]["view_count"] == 2

    def test_unverified_item_is_not_found(self, client, db, owner):
        hidden = make_item(db, owner, is_verified=False)

        response = client.get(f"/api/items/{hidden.id}")

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_filters_and_pagination(self, client, db, owner):
        for i in range(3):
            make_item(db, owner, title=f"Phone {i}")
        make_item(db, owner, title="Returned phone", status=ItemStatus.RETURNED)

        response = client.get("/api/items?limit=2&page=2&search=Phone")
        data = response.json()

        assert len(data["items"]) == 1
        assert data["pagination"]["total_pages"] == 2
        assert data["pagination"]["has_prev_page"] is True
        assert data["pagination"]["has_next_page"] is False

        returned = client.get("/api/items?status=returned").json()
        assert [i["title"] for i in returned["items"]] == ["Returned phone"]

    def test_invalid_sort_column(self, client):
        response = client.get("/api/items?sortBy=password_hash")

        assert response.status_code == 400

    def test_my_items_include_claim_counts(self, client, db, owner, claimant, stranger, item):
        submit_claim(client, claimant, item, WEAK_ANSWERS)
        submit_claim(client, stranger, item, STRONG_ANSWERS)

        response = client.get("/api/items/user/my-items", headers=auth_headers(owner))

        assert response.status_code == 200
        items = response.json()["items"]
        assert len(items) == 1
        assert items[0]["pending_claims"] == 2
        assert items[0]["approved_claims"] == 0

    def test_categories_fall_back_to_defaults(self, client):
        response = client.get("/api/items/meta/categories")

        assert response.status_code == 200
        names = [c["name"] for c in response.json()["categories"]]
        assert names == list(test_settings.default_categories)

    def test_locations(self, client):
        response = client.get("/api/items/meta/locations")

        assert response.status_code == 200
        assert response.json()["locations"][0]["name"] == test_settings.default_locations[0][0]


class TestItemOwnership:
    """物品の更新・削除のテスト"""

    def test_owner_updates_item(self, client, owner, item):
        response = client.put(
            f"/api/items/{item.id}", json={"title": "Black Samsung phone"}, headers=auth_headers(owner)
        )

        assert response.status_code == 200
        assert response.json()["item"]["title"] == "Black Samsung phone"

    def test_non_owner_cannot_update(self, client, stranger, item):
        response = client.put(f"/api/items/{item.id}", json={"title": "Mine now"}, headers=auth_headers(stranger))

        assert response.status_code == 403

    def test_owner_closes_and_reopens_item(self, client, owner, item):
        headers = auth_headers(owner)

        closed = client.put(f"/api/items/{item.id}", json={"status": "closed"}, headers=headers)
        reopened = client.put(f"/api/items/{item.id}", json={"status": "active"}, headers=headers)

        assert closed.status_code == 200
        assert closed.json()["item"]["status"] == "closed"
        assert reopened.status_code == 200
        assert reopened.json()["item"]["status"] == "active"

    def test_owner_cannot_set_claimed_directly(self, client, db, owner, item):
        for status in ("claimed", "returned"):
            response = client.put(f"/api/items/{item.id}", json={"status": status}, headers=auth_headers(owner))

            assert response.status_code == 409
            assert response.json()["code"] == "STATE_CONFLICT"
        db.expire_all()
        assert db.get(Item, item.id).status == ItemStatus.ACTIVE

    def test_owner_cannot_reopen_after_approval(self, client, db, owner, claimant, stranger, item):
        """承認済みクレームがある物品を再公開して、別のクレームを承認することはできない"""
        first = submit_claim(client, claimant, item, WEAK_ANSWERS).json()["claim"]["claim_id"]
        second = submit_claim(client, stranger, item, WEAK_ANSWERS).json()["claim"]["claim_id"]
        assert client.put(f"/api/claims/{first}/approve", headers=auth_headers(owner)).status_code == 200

        reopened = client.put(f"/api/items/{item.id}", json={"status": "active"}, headers=auth_headers(owner))
        closed = client.put(f"/api/items/{item.id}", json={"status": "closed"}, headers=auth_headers(owner))
        approved = client.put(f"/api/claims/{second}/approve", headers=auth_headers(owner))

        assert reopened.status_code == 409
        assert closed.status_code == 409
        assert approved.status_code == 409
        db.expire_all()
        assert db.get(Item, item.id).status == ItemStatus.CLAIMED
        assert db.query(Claim).filter(Claim.status == ClaimStatus.APPROVED).count() == 1

    def test_owner_update_without_status_change_is_allowed(self, client, owner, claimant, item):
        claim_id = submit_claim(client, claimant, item, WEAK_ANSWERS).json()["claim"]["claim_id"]
        client.put(f"/api/claims/{claim_id}/approve", headers=auth_headers(owner))

        response = client.put(
            f"/api/items/{item.id}",
            json={"title": "Black Samsung phone", "status": "claimed"},
            headers=auth_headers(owner),
        )

        assert response.status_code == 200
        assert response.json()["item"]["title"] == "Black Samsung phone"

    def test_owner_deletes_item_and_claims(self, client, db, owner, claimant, stranger, item):
        """物品の削除でクレームと提出済みの証明書類も削除される"""
        documents_before = documents_count()
        submit_claim(client, stranger, item, WEAK_ANSWERS)
        claim_id = submit_claim(client, claimant, item, STRONG_ANSWERS).json()["claim"]["claim_id"]
        assert upload_proof(client, claimant, claim_id).status_code == 200
        assert documents_count() == documents_before + 1

        response = client.delete(f"/api/items/{item.id}", headers=auth_headers(owner))

        assert response.status_code == 200
        db.expire_all()
        assert db.query(Item).count() == 0
        assert db.query(Claim).count() == 0
        assert documents_count() == documents_before


class TestClaimSubmission:
    """クレーム提出のテスト"""

    def test_strong_match_awaits_proof(self, client, claimant, item):
        response = submit_claim(client, claimant, item, STRONG_ANSWERS)

        assert response.status_code == 201
        claim = response.json()["claim"]
        assert claim["match_level"] == "strong_match"
        assert claim["status"] == "awaiting_proof"
        assert claim["correct_answers"] == 4
        assert claim["total_questions"] == 5
        assert claim["accuracy_percentage"] == 80
        assert claim["item_title"] == item.title

    def test_partial_match_awaits_proof(self, client, claimant, item):
        response = submit_claim(client, claimant, item, PARTIAL_ANSWERS)

        assert response.status_code == 201
        assert response.json()["claim"]["match_level"] == "partial_match"
        assert response.json()["claim"]["status"] == "awaiting_proof"

    def test_weak_match_awaits_owner(self, client, claimant, item):
        response = submit_claim(client, claimant, item, WEAK_ANSWERS)

        assert response.status_code == 201
        assert response.json()["claim"]["match_level"] == "weak_match"
        assert response.json()["claim"]["status"] == "pending_verification"

    def test_answer_count_mismatch(self, client, db, claimant, item):
        response = submit_claim(client, claimant, item, STRONG_ANSWERS[:4])

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert db.query(Claim).count() == 0

    def test_duplicate_claim(self, client, claimant, item):
        assert submit_claim(client, claimant, item, WEAK_ANSWERS).status_code == 201

        response = submit_claim(client, claimant, item, STRONG_ANSWERS)

        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_CLAIM"

    def test_self_claim(self, client, owner, item):
        response = submit_claim(client, owner, item, STRONG_ANSWERS)

        assert response.status_code == 400
        assert response.json()["code"] == "SELF_CLAIM"

    def test_unverified_item_cannot_be_claimed(self, client, db, owner, claimant):
        hidden = make_item(db, owner, is_verified=False)

        response = submit_claim(client, claimant, hidden, STRONG_ANSWERS)

        assert response.status_code == 404

    def test_item_without_questions(self, client, db, owner, claimant):
        bare = make_item(db, owner, questions=[])

        response = submit_claim(client, claimant, bare, [])

        assert response.status_code == 400

    def test_unique_constraint_on_claims(self, db, owner, claimant, item):
        for _ in range(2):
            db.add(Claim(
                item_id=item.id,
                claimant_id=claimant.id,
                item_owner_id=owner.id,
                status=ClaimStatus.PENDING_VERIFICATION,
                match_level=MatchLevel.WEAK,
            ))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()


class TestClaimLifecycle:
    """承認・却下・返却完了のテスト"""

    def test_non_owner_cannot_approve(self, client, claimant, stranger, item):
        claim_id = submit_claim(client, claimant, item, WEAK_ANSWERS).json()["claim"]["claim_id"]

        for user in (claimant, stranger):
            response = client.put(f"/api/claims/{claim_id}/approve", headers=auth_headers(user))
            assert response.status_code == 403
            assert response.json()["code"] == "FORBIDDEN"

    def test_owner_approves_and_completes(self, client, db, owner, claimant, item):
        claim_id = submit_claim(client, claimant, item, WEAK_ANSWERS).json()["claim"]["claim_id"]

        approved = client.put(f"/api/claims/{claim_id}/approve", headers=auth_headers(owner))
        assert approved.status_code == 200
        assert approved.json()["claim"]["status"] == "approved"
        assert approved.json()["claim"]["contact_revealed"] is True
        assert approved.json()["claim"]["item_status"] == "claimed"

        completed = client.put(f"/api/claims/{claim_id}/complete", headers=auth_headers(claimant))
        assert completed.status_code == 200
        assert completed.json()["claim"]["status"] == "completed"

        db.expire_all()
        assert db.get(Item, item.id).status == ItemStatus.RETURNED
        assert db.get(Claim, claim_id).completed_at is not None

    def test_cannot_complete_unapproved_claim(self, client, owner, claimant, item):
        claim_id = submit_claim(client, claimant, item, WEAK_ANSWERS).json()["claim"]["claim_id"]

        response = client.put(f"/api/claims/{claim_id}/complete", headers=auth_headers(owner))

        assert response.status_code == 409
        assert response.json()["code"] == "STATE_CONFLICT"

    def test_reject_with_reason(self, client, owner, claimant, item):
        claim_id = submit_claim(client, claimant, item, WEAK_ANSWERS).json()["claim"]["claim_id"]

        response = client.put(
            f"/api/claims/{claim_id}/reject", json={"reason": "Wrong wallpaper"}, headers=auth_headers(owner)
        )
        assert response.status_code == 200
        assert response.json()["claim"]["status"] == "rejected"
        assert response.json()["claim"]["admin_notes"] == "Wrong wallpaper"

        again = client.put(f"/api/claims/{claim_id}/approve", headers=auth_headers(owner))
        assert again.status_code == 409

    def test_reject_without_body(self, client, owner, claimant, item):
        claim_id = submit_claim(client, claimant, item, WEAK_ANSWERS).json()["claim"]["claim_id"]

        response = client.put(f"/api/claims/{claim_id}/reject", headers=auth_headers(owner))

        assert response.status_code == 200
        assert response.json()["claim"]["admin_notes"] == "Rejected by item owner"

    def test_second_claim_cannot_be_approved(self, client, owner, claimant, stranger, item):
        first = submit_claim(client, claimant, item, WEAK_ANSWERS).json()["claim"]["claim_id"]
        second = submit_claim(client, stranger, item, WEAK_ANSWERS).json()["claim"]["claim_id"]

        assert client.put(f"/api/claims/{first}/approve", headers=auth_headers(owner)).status_code == 200
        response = client.put(f"/api/claims/{second}/approve", headers=auth_headers(owner))

        assert response.status_code == 409

    def test_unknown_claim(self, client, owner):
        response = client.put("/api/claims/9999/approve", headers=auth_headers(owner))

        assert response.status_code == 404


class TestProof:
    """身分証明書類のテスト"""

    def test_proof_flow(self, client, db, owner, claimant, item):
        claim_id = submit_claim(client, claimant, item, STRONG_ANSWERS).json()["claim"]["claim_id"]

        uploaded = upload_proof(client, claimant, claim_id)
        assert uploaded.status_code == 200
        assert uploaded.json()["claim"]["status"] == "proof_submitted"
        assert uploaded.json()["claim"]["has_proof"] is True

        document = client.get(f"/api/claims/{claim_id}/proof", headers=auth_headers(owner))
        assert document.status_code == 200
        assert document.content == PDF_CONTENT

        verified = client.put(
            f"/api/claims/{claim_id}/verify-proof", json={"verified": True}, headers=auth_headers(owner)
        )
        assert verified.status_code == 200
        assert verified.json()["claim"]["status"] == "approved"
        assert verified.json()["claim"]["proof_verified"] is True

        db.expire_all()
        assert db.get(Item, item.id).status == ItemStatus.CLAIMED

    def test_rejected_proof_closes_claim(self, client, owner, claimant, item):
        claim_id = submit_claim(client, claimant, item, PARTIAL_ANSWERS).json()["claim"]["claim_id"]
        upload_proof(client, claimant, claim_id, content=png_bytes(), filename="id.png", content_type="image/png")

        response = client.put(
            f"/api/claims/{claim_id}/verify-proof", json={"verified": False}, headers=auth_headers(owner)
        )

        assert response.status_code == 200
        assert response.json()["claim"]["status"] == "rejected"

    def test_resubmission_replaces_document(self, client, claimant, item):
        claim_id = submit_claim(client, claimant, item, STRONG_ANSWERS).json()["claim"]["claim_id"]
        upload_proof(client, claimant, claim_id)
        before = documents_count()

        response = upload_proof(client, claimant, claim_id, content=b"%PDF-1.4 second copy")

        assert response.status_code == 200
        assert documents_count() == before

    def test_weak_claim_cannot_upload_proof(self, client, claimant, item):
        claim_id = submit_claim(client, claimant, item, WEAK_ANSWERS).json()["claim"]["claim_id"]
        before = documents_count()

        response = upload_proof(client, claimant, claim_id)

        assert response.status_code == 409
        assert documents_count() == before

    def test_owner_cannot_upload_proof(self, client, owner, claimant, item):
        claim_id = submit_claim(client, claimant, item, STRONG_ANSWERS).json()["claim"]["claim_id"]

        response = upload_proof(client, owner, claim_id)

        assert response.status_code == 403

    def test_stranger_cannot_download_proof(self, client, claimant, stranger, item):
        claim_id = submit_claim(client, claimant, item, STRONG_ANSWERS).json()["claim"]["claim_id"]
        upload_proof(client, claimant, claim_id)

        response = client.get(f"/api/claims/{claim_id}/proof", headers=auth_headers(stranger))

        assert response.status_code == 403

    def test_verify_without_proof(self, client, owner, claimant, item):
        claim_id = submit_claim(client, claimant, item, STRONG_ANSWERS).json()["claim"]["claim_id"]

        response = client.put(
            f"/api/claims/{claim_id}/verify-proof", json={"verified": True}, headers=auth_headers(owner)
        )

        assert response.status_code == 409

    def test_invalid_proof_type(self, client, claimant, item):
        claim_id = submit_claim(client, claimant, item, STRONG_ANSWERS).json()["claim"]["claim_id"]

        response = upload_proof(client, claimant, claim_id, content=b"hello", filename="id.txt", content_type="text/plain")

        assert response.status_code == 400


class TestContact:
    """連絡先開示のテスト"""

    def test_contact_hidden_before_approval(self, client, owner, claimant, item):
        claim_id = submit_claim(client, claimant, item, WEAK_ANSWERS).json()["claim"]["claim_id"]

        response = client.get(f"/api/claims/{claim_id}/contact", headers=auth_headers(claimant))

        assert response.status_code == 403

    def test_contact_after_approval(self, client, owner, claimant, stranger, item):
        claim_id = submit_claim(client, claimant, item, WEAK_ANSWERS).json()["claim"]["claim_id"]
        client.put(f"/api/claims/{claim_id}/approve", headers=auth_headers(owner))

        for_claimant = client.get(f"/api/claims/{claim_id}/contact", headers=auth_headers(claimant))
        assert for_claimant.status_code == 200
        contact = for_claimant.json()["contact"]
        assert contact["role"] == "item_owner"
        assert contact["email"] == "owner@campus.edu"
        assert contact["preferred_contact"] == "phone"
        assert contact["contact_info"]["note"] == "Library front desk"

        for_owner = client.get(f"/api/claims/{claim_id}/contact", headers=auth_headers(owner))
        assert for_owner.status_code == 200
        assert for_owner.json()["contact"]["role"] == "claimant"
        assert for_owner.json()["contact"]["email"] == "claimant@campus.edu"

        response = client.get(f"/api/claims/{claim_id}/contact", headers=auth_headers(stranger))
        assert response.status_code == 403


class TestClaimListing:
    """クレーム一覧のテスト"""

    def test_my_claims_hide_answers(self, client, claimant, item):
        submit_claim(client, claimant, item, STRONG_ANSWERS)

        response = client.get("/api/claims/my", headers=auth_headers(claimant))

        assert response.status_code == 200
        claims = response.json()["claims"]
        assert len(claims) == 1
        assert claims[0]["item_owner_name"] == "Olivia Owner"
        assert "verification_answers" not in claims[0]

    def test_owner_sees_answer_comparison(self, client, owner, claimant, item):
        submit_claim(client, claimant, item, STRONG_ANSWERS)

        response = client.get("/api/claims/for-my-items", headers=auth_headers(owner))

        claims = response.json()["claims"]
        assert len(claims) == 1
        assert claims[0]["claimant_name"] == "Carl Claimant"
        answers = claims[0]["verification_answers"]
        assert answers[1]["correct_answer"] == "Samsung"
        assert answers[1]["user_answer"] == "samsung"
        assert answers[4]["is_correct"] is False


class TestAdmin:
    """管理者機能のテスト"""

    def test_requires_admin(self, client, owner):
        response = client.get("/api/admin/dashboard-stats", headers=auth_headers(owner))

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_dashboard_stats(self, client, db, admin, owner, claimant, item):
        make_item(db, owner, is_verified=False)
        submit_claim(client, claimant, item, WEAK_ANSWERS)

        response = client.get("/api/admin/dashboard-stats", headers=auth_headers(admin))

        assert response.status_code == 200
        stats = response.json()["stats"]
        assert stats["total_users"] == 2
        assert stats["found_items"] == 2
        assert stats["pending_items"] == 1
        assert stats["claims"]["pending_verification"] == 1

    def test_verify_item_publishes_it(self, client, db, admin, owner):
        hidden = make_item(db, owner, is_verified=False)

        response = client.put(
            f"/api/admin/items/{hidden.id}/verify", json={"is_verified": True}, headers=auth_headers(admin)
        )

        assert response.status_code == 200
        assert client.get(f"/api/items/{hidden.id}").status_code == 200

    def test_list_users_with_search(self, client, admin, owner, claimant):
        response = client.get("/api/admin/users?search=Claimant", headers=auth_headers(admin))

        users = response.json()["users"]
        assert [u["email"] for u in users] == ["claimant@campus.edu"]

    def test_unverify_user_blocks_login(self, client, admin, owner):
        client.put(f"/api/admin/users/{owner.id}/verify", json={"is_verified": False}, headers=auth_headers(admin))

        response = client.get("/api/auth/me", headers=auth_headers(owner))

        assert response.status_code == 401
        assert response.json()["code"] == "ACCOUNT_UNVERIFIED"

    def test_change_role(self, client, db, admin, owner):
        response = client.put(f"/api/admin/users/{owner.id}/role", json={"role": "admin"}, headers=auth_headers(admin))

        assert response.status_code == 200
        db.expire_all()
        assert db.get(User, owner.id).role == UserRole.ADMIN

    def test_delete_user_cascades(self, client, db, admin, owner, claimant, item):
        other_item = make_item(db, claimant, title="Claimant's lost wallet")
        submit_claim(client, claimant, item, WEAK_ANSWERS)
        submit_claim(client, owner, other_item, WEAK_ANSWERS)
        claimant_id = claimant.id

        response = client.delete(f"/api/admin/users/{claimant_id}", headers=auth_headers(admin))

        assert response.status_code == 200
        db.expire_all()
        assert db.get(User, claimant_id) is None
        assert db.query(Item).filter(Item.reporter_id == claimant_id).count() == 0
        assert db.query(Claim).count() == 0

    def test_admin_cannot_be_deleted(self, client, db, admin):
        other_admin = make_user(db, "A0002", "admin2@campus.edu", role=UserRole.ADMIN)

        response = client.delete(f"/api/admin/users/{other_admin.id}", headers=auth_headers(admin))

        assert response.status_code == 403

    def test_admin_item_listing_includes_unverified(self, client, db, admin, owner):
        make_item(db, owner, is_verified=False)

        response = client.get("/api/admin/items?isVerified=false", headers=auth_headers(admin))

        assert response.status_code == 200
        assert response.json()["pagination"]["total_items"] == 1

    def test_admin_deletes_item(self, client, db, admin, item):
        response = client.delete(f"/api/admin/items/{item.id}", headers=auth_headers(admin))

        assert response.status_code == 200
        db.expire_all()
        assert db.query(Item).count() == 0


class TestCreateAdmin:
    """管理者作成コマンドのテスト"""

    def test_creates_admin(self, db):
        user = create_admin(db, "Root@Campus.edu", "rootpass", "A9999")

        assert user.email == "root@campus.edu"
        assert user.is_admin()

    def test_promotes_existing_user(self, db, owner):
        user = create_admin(db, "owner@campus.edu", "newpass123", "IGNORED")

        assert user.id == owner.id
        assert user.role == UserRole.ADMIN
        assert user.student_id == "S1001"


class TestAuditLog:
    """監査ログのテスト"""

    def audit_lines(self, action):
        with open(os.path.join(os.environ["LOG_DIR"], "audit.log"), encoding="utf-8") as f:
            return [line for line in f if f"| {action} |" in line]

    def test_claim_submission_is_audited(self, client, claimant, item):
        claim_id = submit_claim(client, claimant, item, STRONG_ANSWERS).json()["claim"]["claim_id"]

        actor, action, resource, details = [
            part.strip() for part in self.audit_lines("claim_submitted")[-1].split(" | ")[1:]
        ]
        assert actor == str(claimant.id)
        assert resource == f"claim:{claim_id}"
        details = json.loads(details)
        assert details["item_id"] == item.id
        assert details["status"] == "awaiting_proof"
        assert details["match_level"] == "strong_match"

    def test_rate_limited_request_is_audited(self, client, owner):
        for _ in range(6):
            client.post("/api/auth/login", json={"email": "owner@campus.edu", "password": "wrongpass"})

        line = self.audit_lines("rate_limited")[-1]
        assert "| anonymous |" in line
        assert "/api/auth/login" in line


class TestErrorHandling:
    """エラーハンドリングテスト"""

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "OK"

    def test_unknown_route(self, client):
        response = client.get("/api/does-not-exist")

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_invalid_item_id(self, client):
        response = client.get("/api/items/INVALID-ID")

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_claim_validation_error(self, client, claimant):
        response = client.post("/api/claims", json={"verificationAnswers": []}, headers=auth_headers(claimant))

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
