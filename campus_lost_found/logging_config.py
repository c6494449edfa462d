import logging
import logging.handlers
import json
from pathlib import Path
from typing import Any, Dict, Optional

from campus_lost_found.config import get_settings


def _rotating_handler(path: Path, backup_days: int, formatter: logging.Formatter) -> logging.Handler:
    # 日次ローテーション
    handler = logging.handlers.TimedRotatingFileHandler(
        path,
        when='midnight',
        interval=1,
        backupCount=backup_days,
        encoding='utf-8'
    )
    handler.setFormatter(formatter)
    return handler


class AuditLogger:
    """
    監査ログ（audit.log、1年間保持）

    クレームの状態遷移・管理者操作・認証イベントを、誰が・何に対して・何をしたか
    の形で一行ずつ記録する。アプリケーションログには流さない。
    """

    def __init__(self, log_dir: Path):
        formatter = logging.Formatter(
            '%(asctime)s | %(actor)s | %(action)s | %(resource)s | %(details)s'
        )
        self.logger = logging.getLogger('audit')
        self.logger.setLevel(logging.INFO)
        self.logger.addHandler(_rotating_handler(log_dir / "audit.log", 365, formatter))
        self.logger.propagate = False

    def record(self, actor: Optional[Any], action: str, resource: str, details: Optional[Dict[str, Any]] = None):
        self.logger.info('audit', extra={
            'actor': actor if actor is not None else 'anonymous',
            'action': action,
            'resource': resource,
            'details': json.dumps(details or {}, ensure_ascii=False, default=str),
        })


class LoggingConfig:
    """アプリケーションログ（application.log、30日保持）と監査ログの設定"""

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        formatter = logging.Formatter('%(asctime)s | %(name)s | %(levelname)s | %(message)s')
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)

        root_logger = logging.getLogger()
        root_logger.setLevel(logging.INFO)
        root_logger.addHandler(_rotating_handler(self.log_dir / "application.log", 30, formatter))
        root_logger.addHandler(console_handler)

        self.audit = AuditLogger(self.log_dir)

    def log_request(self, method: str, path: str, status_code: int, duration: float, slow_threshold: float):
        """APIリクエスト。閾値を超えた応答は警告として残す"""
        logger = logging.getLogger('api')
        message = f"{method} {path} -> {status_code} ({duration:.3f}s)"
        if duration > slow_threshold:
            logger.warning(f"Slow request: {message}, threshold {slow_threshold:.1f}s")
        elif status_code >= 400:
            logger.warning(message)
        else:
            logger.info(message)

    def log_security_event(self, event_type: str, user_id: Optional[int] = None, **details):
        """認証失敗・権限不足・レート制限など"""
        logging.getLogger('security').warning(
            f"{event_type} user={user_id or 'anonymous'} {details}"
        )
        self.audit.record(user_id, event_type, 'security', details)

    def log_claim_event(self, action: str, claim, actor_id: int, **details):
        """クレームの提出・状態遷移。物品IDと遷移後の状態は常に記録する"""
        details = {'item_id': claim.item_id, 'status': claim.status.value, **details}
        logging.getLogger('claims').info(f"claim {claim.id} {action} by user {actor_id}: {details}")
        self.audit.record(actor_id, action, f"claim:{claim.id}", details)

    def log_admin_action(self, admin_id: int, action: str, resource: str, **details):
        logging.getLogger('admin').info(f"admin {admin_id} {action} {resource} {details}")
        self.audit.record(admin_id, action, resource, details)

    def log_transaction(self, operation: str, duration: float, success: bool):
        logger = logging.getLogger('database')
        if success:
            logger.info(f"{operation} committed in {duration:.3f}s")
        else:
            logger.error(f"{operation} rolled back after {duration:.3f}s")


# グローバルログ設定インスタンス
logging_config = LoggingConfig(get_settings().log_dir)
