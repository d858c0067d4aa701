from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from chartdeck.models import Workspace, WorkspaceMember

logger = logging.getLogger("uvicorn.error")

_READ_ACTIONS = frozenset({"dashboard.read", "chart.read", "dataset.read"})
_EDIT_ACTIONS = _READ_ACTIONS | {
    "dashboard.create",
    "dashboard.update",
    "dashboard.export",
    "chart.create",
    "chart.update",
    "chart.export",
    "chart.query",
    "cache.manage",
}
_ADMIN_ACTIONS = _EDIT_ACTIONS | {"dashboard.delete", "chart.delete", "dataset.manage"}

ROLE_ACTIONS: dict[str, frozenset[str]] = {
    "viewer": _READ_ACTIONS | {"dashboard.export", "chart.export"},
    "editor": frozenset(_EDIT_ACTIONS | {"chart.delete"}),
    "admin": frozenset(_ADMIN_ACTIONS),
    "owner": frozenset(_ADMIN_ACTIONS),
}


class PermissionService:
    def get_role(self, db: Session, user_id: int, workspace_id: int) -> str | None:
        member = (
            db.query(WorkspaceMember)
            .join(Workspace, Workspace.id == WorkspaceMember.workspace_id)
            .filter(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.user_id == user_id,
                Workspace.is_active == True,  # noqa: E712
            )
            .first()
        )
        return member.role if member else None

    def has_permission(self, db: Session, user_id: int, workspace_id: int, action: str) -> bool:
        role = self.get_role(db, user_id, workspace_id)
        if role is None:
            return False
        return action in ROLE_ACTIONS.get(role, frozenset())
