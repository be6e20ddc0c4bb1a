"""
Утилита для отправки уведомлений админам

Доставка уведомлений - внешний сервис, сюда передаётся только send_func.
"""
import logging
from typing import Awaitable, Callable, Optional

from shared.config import ADMIN_IDS

logger = logging.getLogger(__name__)

SendFunc = Callable[[str, str], Awaitable[None]]

# Функция доставки по умолчанию (регистрируется при старте приложения)
_default_send_func: Optional[SendFunc] = None


async def log_send(admin_id: str, message: str):
    """
    Доставка по умолчанию: уведомление пишется в лог

    Внешний канал (мессенджер, почта) подключается через set_send_func.
    """
    logger.warning(f"Admin notification for {admin_id}: {message}")


def set_send_func(send_func: Optional[SendFunc]):
    """
    Зарегистрировать функцию доставки уведомлений
    """
    global _default_send_func
    _default_send_func = send_func


def get_send_func() -> Optional[SendFunc]:
    return _default_send_func


async def notify_admin(message: str, level: str = "error", send_func: Optional[SendFunc] = None) -> int:
    """
    Отправить уведомление всем админам

    Args:
        message: Текст уведомления
        level: Уровень (info, warning, error, critical)
        send_func: Функция для отправки сообщения (async callable)

    Returns:
        Количество успешно отправленных уведомлений
    """
    send_func = send_func or _default_send_func

    if not ADMIN_IDS:
        logger.warning("ADMIN_IDS is empty, cannot send notification")
        return 0

    if send_func is None:
        logger.warning("send_func not provided, cannot send notification")
        return 0

    formatted_message = f"[{level.upper()}] {message}"

    success_count = 0
    failed_count = 0

    for admin_id in ADMIN_IDS:
        try:
            await send_func(admin_id, formatted_message)
            success_count += 1
        except Exception as e:
            failed_count += 1
            logger.error(f"Failed to notify admin {admin_id}: {e}")

    logger.info(f"Admin notification sent: {success_count} success, {failed_count} failed")
    return success_count


async def notify_admin_error(error_message: str, context: Optional[dict] = None, send_func: Optional[SendFunc] = None) -> int:
    """
    Отправить уведомление об ошибке

    Args:
        error_message: Сообщение об ошибке
        context: Дополнительный контекст (dict)
        send_func: Функция для отправки сообщения
    """
    message = f"Affiliate program error: {error_message}"

    if context:
        message += "\n" + "\n".join(f"- {key}: {value}" for key, value in context.items())

    return await notify_admin(message, level="error", send_func=send_func)


async def notify_admin_info(info_message: str, send_func: Optional[SendFunc] = None) -> int:
    """
    Отправить информационное уведомление
    """
    return await notify_admin(info_message, level="info", send_func=send_func)
