"""
Role permission matrix for the admin settings screen.

The matrix maps section -> action -> allowed roles and is kept in a local
JSON file. Admins always keep every permission.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from library_portal.config import settings
from library_portal.models import ROLE_ADMIN, ROLE_USER

logger = logging.getLogger(__name__)

Matrix = Dict[str, Dict[str, List[str]]]

ROLES = (ROLE_ADMIN, ROLE_USER)

DEFAULT_PERMISSIONS: Matrix = {
    "BOOKS": {
        "CREATE": [ROLE_ADMIN],
        "READ": [ROLE_ADMIN, ROLE_USER],
        "UPDATE": [ROLE_ADMIN],
        "DELETE": [ROLE_ADMIN],
    },
    "AUTHORS": {
        "CREATE": [ROLE_ADMIN],
        "READ": [ROLE_ADMIN, ROLE_USER],
        "UPDATE": [ROLE_ADMIN],
        "DELETE": [ROLE_ADMIN],
    },
    "CATEGORIES": {
        "CREATE": [ROLE_ADMIN],
        "READ": [ROLE_ADMIN, ROLE_USER],
        "UPDATE": [ROLE_ADMIN],
        "DELETE": [ROLE_ADMIN],
    },
    "BORROW_RECORDS": {
        "CREATE": [ROLE_ADMIN, ROLE_USER],
        "READ_ALL": [ROLE_ADMIN],
        "READ_OWN": [ROLE_USER],
        "UPDATE": [ROLE_ADMIN],
        "DELETE": [ROLE_ADMIN],
    },
}


class PermissionDenied(Exception):
    """Raised when a role may not perform an action."""


class PermissionStore:
    """Loads, edits and saves the permission matrix."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or settings.permissions_file)
        self.matrix: Matrix = {}
        self.load()

    def load(self) -> None:
        """Load the matrix from disk, falling back to the defaults."""
        self.matrix = copy.deepcopy(DEFAULT_PERMISSIONS)
        if not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                stored = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load permissions from {self.path}: {e}")
            return
        for section, actions in stored.items():
            if section in self.matrix and isinstance(actions, dict):
                for action, roles in actions.items():
                    if action in self.matrix[section]:
                        self.matrix[section][action] = self._normalize(roles)

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(self.matrix, f, indent=2, ensure_ascii=False)
        logger.info(f"Permissions saved to {self.path}")

    @staticmethod
    def _normalize(roles) -> List[str]:
        cleaned = [role for role in ROLES if role in (roles or [])]
        if ROLE_ADMIN not in cleaned:
            cleaned.insert(0, ROLE_ADMIN)
        return cleaned

    def can(self, role: Optional[str], section: str, action: str) -> bool:
        return bool(role) and role in self.matrix.get(section, {}).get(action, [])

    def require(self, role: Optional[str], section: str, action: str) -> None:
        if not self.can(role, section, action):
            raise PermissionDenied("没有权限执行此操作")

    def toggle(self, section: str, action: str, role: str) -> List[str]:
        """Grant or revoke ``role`` for one action. Admin cannot be revoked."""
        if section not in self.matrix or action not in self.matrix[section]:
            raise ValueError(f"未知的权限: {section}.{action}")
        if role == ROLE_ADMIN:
            raise ValueError("不能移除管理员的权限")
        if role not in ROLES:
            raise ValueError(f"无效的角色: {role}")
        roles = self.matrix[section][action]
        if role in roles:
            roles.remove(role)
        else:
            roles.append(role)
        return roles

    def update(self, changes: Matrix) -> Matrix:
        """Replace the given actions' role lists and save the result."""
        for section, actions in changes.items():
            if section not in self.matrix:
                raise ValueError(f"未知的权限分组: {section}")
            for action, roles in actions.items():
                if action not in self.matrix[section]:
                    raise ValueError(f"未知的权限: {section}.{action}")
                unknown = [role for role in roles if role not in ROLES]
                if unknown:
                    raise ValueError(f"无效的角色: {', '.join(unknown)}")
                self.matrix[section][action] = self._normalize(roles)
        self.save()
        return self.matrix

    def reset_to_default(self) -> Matrix:
        self.matrix = copy.deepcopy(DEFAULT_PERMISSIONS)
        self.save()
        return self.matrix
