"""
エラー分類

呼び出し側が「再試行すべきか」「ユーザーに拒否を伝えるべきか」を
判断できるよう、種類ごとに別クラスにしている。
status_code は HTTP 層でそのままレスポンスに使う。
"""

import functools
import logging

logger = logging.getLogger(__name__)


class OrderError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(OrderError):
    """入力が不正(空の明細、数量範囲外、短すぎる理由など)"""
    status_code = 400


class Unauthenticated(OrderError):
    status_code = 401


class PolicyViolation(OrderError):
    """前提条件を満たさない操作。5xx ではない。"""
    status_code = 403


class AccessDenied(PolicyViolation):
    """所有者でも管理者でもない、または購入者に許されない操作"""


class CancellationConflict(PolicyViolation):
    """キャンセル状態機械に反する遷移"""
    status_code = 409


class NotFound(OrderError):
    status_code = 404


class ProductUnavailable(NotFound):
    """商品が存在しない、または販売停止中"""


class RateLimited(OrderError):
    status_code = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class StorageError(OrderError):
    """ストレージ層の障害(接続断・制約違反など)。呼び出し側から再試行してよい。"""
    status_code = 500


def wrap_storage_errors(*driver_errors: type[BaseException]):
    """ドライバ固有の例外を StorageError に変換するデコレータ。"""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except driver_errors as exc:
                logger.exception("Storage operation %s failed", func.__qualname__)
                raise StorageError("Order storage is unavailable.") from exc

        return wrapper

    return decorator
