import io
import secrets
import logging
from pathlib import Path
from typing import Dict, Optional

from fastapi import Depends, UploadFile
from PIL import Image, UnidentifiedImageError

from campus_lost_found.config import Settings, get_settings
from campus_lost_found.errors import ValidationError, StorageError

logger = logging.getLogger(__name__)

IMAGE_FIELD = "image"
PROOF_FIELD = "proof"


class FileStorage:
    """アップロードファイルのディスク保存"""

    def __init__(self, settings: Settings):
        self.root = Path(settings.storage_root)
        # フィールドごとの許可拡張子・MIMEタイプ・サイズ上限・保存先
        self.rules: Dict[str, Dict] = {
            IMAGE_FIELD: {
                "extensions": {".jpg", ".jpeg", ".png", ".gif"},
                "mime_types": {"image/jpeg", "image/png", "image/gif"},
                "max_size": settings.max_image_size,
                "subdir": "uploads",
                "prefix": "item",
            },
            PROOF_FIELD: {
                "extensions": {".jpg", ".jpeg", ".png", ".pdf"},
                "mime_types": {"image/jpeg", "image/png", "application/pdf"},
                "max_size": settings.max_proof_size,
                "subdir": "documents",
                "prefix": "proof",
            },
        }

    def ensure_directories(self):
        for rule in self.rules.values():
            (self.root / rule["subdir"]).mkdir(parents=True, exist_ok=True)

    def save(self, field: str, upload: UploadFile) -> str:
        """
        検証済みのファイルを保存し、保存先の相対パスを返す

        Raises:
            ValidationError: 拡張子・MIMEタイプ・サイズ・内容が不正
            StorageError: ディスクへの書き込み失敗
        """
        rule = self.rules.get(field)
        if rule is None:
            raise ValidationError(f"Unsupported upload field: {field}")

        filename = upload.filename or ""
        ext = Path(filename).suffix.lower()
        if ext not in rule["extensions"]:
            allowed = ", ".join(sorted(e.lstrip(".") for e in rule["extensions"]))
            raise ValidationError(f"File type not allowed. Allowed types: {allowed}")

        content_type = (upload.content_type or "").lower()
        if content_type and content_type not in rule["mime_types"]:
            raise ValidationError(f"File type not allowed: {content_type}")

        content = upload.file.read(rule["max_size"] + 1)
        if not content:
            raise ValidationError("Uploaded file is empty")
        if len(content) > rule["max_size"]:
            raise ValidationError(
                f"File is too large (max {rule['max_size'] // (1024 * 1024)}MB)"
            )

        self._check_content(ext, content)

        relative_path = f"{rule['subdir']}/{self.generate_secure_filename(rule['prefix'], ext)}"
        target = self.root / relative_path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as f:
                f.write(content)
        except OSError as e:
            logger.error(f"Failed to write upload {target}: {e}")
            raise StorageError(str(e))

        logger.info(f"Stored {field} upload as {relative_path} ({len(content)} bytes)")
        return relative_path

    def delete(self, relative_path: Optional[str]) -> bool:
        """保存済みファイルを削除。リクエスト失敗時の後始末にも使う"""
        if not relative_path:
            return False
        path = self.absolute_path(relative_path)
        if path is None or not path.exists():
            return False
        try:
            path.unlink()
            return True
        except OSError as e:
            logger.warning(f"Failed to delete upload {path}: {e}")
            return False

    def absolute_path(self, relative_path: str) -> Optional[Path]:
        root = self.root.resolve()
        path = (root / relative_path.lstrip("/")).resolve()
        # ストレージ外へのパス指定は拒否
        if root not in path.parents:
            return None
        return path

    def generate_secure_filename(self, prefix: str, ext: str) -> str:
        """推測されにくいファイル名を生成"""
        return f"{prefix}-{secrets.token_urlsafe(16)}{ext}"

    def _check_content(self, ext: str, content: bytes):
        if ext == ".pdf":
            if not content.startswith(b"%PDF-"):
                raise ValidationError("Uploaded file is not a valid PDF document")
            return
        try:
            with Image.open(io.BytesIO(content)) as img:
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError):
            raise ValidationError("Uploaded file is not a valid image")


def get_storage(settings: Settings = Depends(get_settings)) -> FileStorage:
    return FileStorage(settings)
