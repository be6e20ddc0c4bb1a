"""
Иерархия ошибок партнёрской программы

Все ошибки восстановимые: HTTP-слой превращает их в ответ клиенту.
"""


class AffiliateError(Exception):
    """Базовая ошибка партнёрской программы"""

    status_code = 400
    default_code = "AFFILIATE_ERROR"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code}


class NotFoundError(AffiliateError):
    """Партнёр, клик, реферал, соревнование или выплата не найдены"""

    status_code = 404
    default_code = "NOT_FOUND"


class UnknownOrInactiveAffiliateError(NotFoundError):
    """Код не принадлежит активному партнёру"""

    default_code = "INVALID_AFFILIATE_CODE"


class ConflictError(AffiliateError):
    """Повторная регистрация, повторное участие, двойной захват"""

    status_code = 409
    default_code = "CONFLICT"


class AlreadySettledError(ConflictError):
    """Призы соревнования уже распределены"""

    default_code = "ALREADY_SETTLED"


class IllegalTransitionError(AffiliateError):
    """Переход статуса не разрешён графом состояний"""

    status_code = 409
    default_code = "ILLEGAL_TRANSITION"


class NotJoinableError(IllegalTransitionError):
    """Соревнование завершено или отменено"""

    default_code = "NOT_JOINABLE"


class InvalidInputError(AffiliateError):
    """Отрицательные суммы, неверные даты и т.п."""

    status_code = 400
    default_code = "INVALID_INPUT"


class UnauthorizedError(AffiliateError):
    """Нет идентичности пользователя или неверный секрет webhook"""

    status_code = 401
    default_code = "UNAUTHORIZED"


class ForbiddenError(AffiliateError):
    """Нет прав на операцию"""

    status_code = 403
    default_code = "FORBIDDEN"


class RateLimitedError(AffiliateError):
    """Превышен лимит запросов"""

    status_code = 429
    default_code = "RATE_LIMITED"


class StorageError(AffiliateError):
    """Сбой хранилища, не предусмотренный таксономией"""

    status_code = 503
    default_code = "STORAGE_ERROR"
