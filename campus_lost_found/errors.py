"""業務エラーの定義

全ての例外は機械可読な ``code`` と HTTP ステータスを持ち、
main.py の例外ハンドラーで ``{success: false, error, code}`` に変換される。
"""


class LostFoundError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {"success": False, "error": self.message, "code": self.code}


class ValidationError(LostFoundError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Invalid input. Please check the submitted fields."


class AuthenticationError(LostFoundError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class MissingTokenError(AuthenticationError):
    code = "MISSING_TOKEN"
    default_message = "Access token required. Please log in."


class TokenExpiredError(AuthenticationError):
    status_code = 403
    code = "TOKEN_EXPIRED"
    default_message = "Token has expired. Please log in again."


class MalformedTokenError(AuthenticationError):
    status_code = 403
    code = "MALFORMED_TOKEN"
    default_message = "Invalid token. Please log in again."


class UserNotFoundError(AuthenticationError):
    code = "USER_NOT_FOUND"
    default_message = "Invalid token - user not found. Please log in again."


class AccountUnverifiedError(AuthenticationError):
    code = "ACCOUNT_UNVERIFIED"
    default_message = "Account not verified. Please contact administrator."


class TokenUserMismatchError(AuthenticationError):
    code = "TOKEN_USER_MISMATCH"
    default_message = "Token does not match the account. Please log in again."


class AuthorizationError(LostFoundError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "You are not allowed to perform this action"


class NotFoundError(LostFoundError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class DuplicateClaimError(LostFoundError):
    status_code = 409
    code = "DUPLICATE_CLAIM"
    default_message = "You have already submitted a claim for this item"


class SelfClaimError(LostFoundError):
    status_code = 400
    code = "SELF_CLAIM"
    default_message = "You cannot claim your own item"


class StateConflictError(LostFoundError):
    status_code = 409
    code = "STATE_CONFLICT"
    default_message = "This action is not allowed in the current state"


class StorageError(LostFoundError):
    status_code = 500
    code = "STORAGE_ERROR"
    default_message = "Could not save your request. Please try again later."

    def to_dict(self):
        # 内部の詳細は返さない
        return {"success": False, "error": self.default_message, "code": self.code}
