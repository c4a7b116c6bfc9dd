"""Code-based access gate and the current-user session context."""

import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict

from . import services
from .errors import NotFoundError
from .schemas import UserRecord

logger = logging.getLogger(__name__)

GRANTED = "granted"
WRONG_CODE = "wrong_code"
UNKNOWN_USER = "unknown_user"
FORBIDDEN = "forbidden"

INVALID_PASSWORD_MESSAGE = "invalid password"


class AccessResult(BaseModel):
    """Outcome of a code check.

    ``reason`` tells a wrong code apart from an unknown user; both share the
    same user-visible ``message``.
    """

    model_config = ConfigDict(frozen=True)

    granted: bool
    reason: str
    user_id: Optional[int] = None

    @property
    def message(self) -> str:
        return "" if self.granted else INVALID_PASSWORD_MESSAGE


class GatedResult(BaseModel):
    access: AccessResult
    value: Any = None

    @property
    def granted(self) -> bool:
        return self.access.granted


def verify(user_id: int, candidate_code: str) -> AccessResult:
    """Check ``candidate_code`` against the stored code of ``user_id``."""
    try:
        ok = services.verify_user_code(user_id, candidate_code)
    except NotFoundError:
        logger.info("access denied: unknown user %s", user_id)
        return AccessResult(granted=False, reason=UNKNOWN_USER, user_id=user_id)
    if not ok:
        logger.info("access denied: wrong code for user %s", user_id)
        return AccessResult(granted=False, reason=WRONG_CODE, user_id=user_id)
    return AccessResult(granted=True, reason=GRANTED, user_id=user_id)


class SessionContext:
    """Tracks which user is currently acting. Starts as Guest."""

    def __init__(self) -> None:
        self._user: Optional[UserRecord] = None
        self.reset()

    @property
    def user(self) -> UserRecord:
        return self._user

    @property
    def is_admin(self) -> bool:
        return self._user.role_id == services.ADMIN_ROLE_ID

    @property
    def is_guest(self) -> bool:
        return self._user.name == services.GUEST_NAME

    def reset(self) -> None:
        guest = services.get_user_by_name(services.GUEST_NAME)
        if guest is None:
            raise NotFoundError("guest user not found")
        self._user = guest
        logger.info("session reset to guest")

    def refresh(self) -> None:
        """Reload the current user, falling back to Guest if it was removed."""
        user = services.get_user_by_id(self._user.id)
        if user is None:
            self.reset()
        else:
            self._user = user

    def switch_user(self, user_id: int, code: Optional[str] = None) -> AccessResult:
        """Become ``user_id`` if ``code`` matches; switching to Guest needs no code."""
        target = services.get_user_by_id(user_id)
        if target is not None and target.name == services.GUEST_NAME:
            self._user = target
            return AccessResult(granted=True, reason=GRANTED, user_id=user_id)

        result = verify(user_id, code or "")
        if result.granted:
            self._user = target
            logger.info("switched to user %s", user_id)
        return result


def authorize(
    ctx: SessionContext, code: str, target_user_id: Optional[int] = None
) -> AccessResult:
    """Check ``code`` for an operation on behalf of the current user.

    Admins authorize with their own code for any target. Other users may
    only act on themselves.
    """
    current = ctx.user
    if not ctx.is_admin and target_user_id is not None and target_user_id != current.id:
        logger.info("access denied: user %s may not act on user %s", current.id, target_user_id)
        return AccessResult(granted=False, reason=FORBIDDEN, user_id=current.id)
    return verify(current.id, code)


def run_gated(
    ctx: SessionContext,
    code: str,
    action: Callable[[], Any],
    target_user_id: Optional[int] = None,
) -> GatedResult:
    """Run ``action`` only when ``authorize`` grants access."""
    access = authorize(ctx, code, target_user_id)
    if not access.granted:
        return GatedResult(access=access)
    return GatedResult(access=access, value=action())
