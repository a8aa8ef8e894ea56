"""Acting-user boundary.

Authentication itself happens outside the package; callers sign an
:class:`Actor` in and the business logic reads it back through
:meth:`Session.current_actor`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from . import log
from .constants import SUPERVISORY_ROLES, UserRole


@dataclass(frozen=True)
class Actor:
    """The user on whose behalf an operation runs."""

    user_id: int
    role: UserRole

    @property
    def is_supervisor(self) -> bool:
        return self.role in SUPERVISORY_ROLES


class Session:
    """Holds at most one signed-in actor."""

    def __init__(self, actor: Optional[Actor] = None) -> None:
        self._actor = actor

    def current_actor(self) -> Optional[Actor]:
        return self._actor

    def sign_in(self, actor: Actor) -> None:
        self._actor = actor
        log.info("Signed in user %d as %s", actor.user_id, actor.role.value)

    def sign_out(self) -> None:
        if self._actor is not None:
            log.info("Signed out user %d", self._actor.user_id)
        self._actor = None


__all__ = ["Actor", "Session"]
