"""
Идентичность пользователя из шлюза авторизации

Аутентификация выполняется снаружи: шлюз передаёт id и роль
пользователя в заголовках X-User-Id и X-User-Role.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import Affiliate, get_session
from shared.config import ADMIN_IDS
from shared.errors import ForbiddenError, UnauthorizedError
from affiliate_api.services.affiliate_service import AffiliateService

logger = logging.getLogger(__name__)


@dataclass
class CurrentUser:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin" or self.user_id in ADMIN_IDS


async def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None)
) -> CurrentUser:
    """
    Текущий пользователь

    Raises:
        UnauthorizedError: шлюз не передал идентичность
    """
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError("Authentication required")
    return CurrentUser(user_id=x_user_id.strip(), role=(x_user_role or "user").strip().lower())


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    Только для администраторов
    """
    if not user.is_admin:
        logger.warning(f"User {user.user_id} tried to access admin endpoint")
        raise ForbiddenError("Admin access required")
    return user


async def get_current_affiliate(
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session)
) -> Affiliate:
    """
    Партнёрский аккаунт текущего пользователя

    Raises:
        NotFoundError: пользователь не зарегистрирован в программе
    """
    return await AffiliateService.get(session, user.user_id)
