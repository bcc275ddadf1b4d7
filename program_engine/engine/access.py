"""
Identity resolution and capability checks.

The engine does not authenticate anyone itself. Callers register a
token for a user (the API does this for bearer tokens) and services ask
the AccessController whether the resolved user holds a capability.
"""

import logging
import secrets
from typing import Dict, Optional

from ..exceptions import ForbiddenError, UnauthorizedError
from ..models import Role, UserRecord
from .role_store import RoleStore
from .state_manager import StateManager

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Maps opaque tokens to user records held in the state manager."""

    def __init__(self, state_manager: StateManager):
        self.state_manager = state_manager
        self.tokens: Dict[str, str] = {}

    def issue_token(self, user_id: str, token: Optional[str] = None) -> str:
        """
        Register a token for a user.

        Args:
            user_id: User the token authenticates
            token: Explicit token value, generated when omitted

        Returns:
            The registered token
        """
        token = token or secrets.token_urlsafe(24)
        self.tokens[token] = user_id
        return token

    def revoke_token(self, token: str):
        self.tokens.pop(token, None)

    def resolve(self, token: Optional[str]) -> UserRecord:
        """
        Resolve a token to its user.

        Raises:
            UnauthorizedError: If the token is missing, unknown, or its user is gone
        """
        if not token:
            raise UnauthorizedError()
        user_id = self.tokens.get(token)
        user = self.state_manager.get_user(user_id) if user_id else None
        if not user:
            raise UnauthorizedError()
        return user


class AccessController:
    """Capability checks for a resolved user."""

    def __init__(self, role_store: RoleStore):
        self.role_store = role_store

    def role_for(self, user: Optional[UserRecord]) -> Role:
        if user is None:
            raise UnauthorizedError()
        return self.role_store.get_role(user.system_role)

    def is_admin(self, user: Optional[UserRecord]) -> bool:
        return user is not None and self.role_for(user).is_admin

    def has(self, user: Optional[UserRecord], capability: str) -> bool:
        return user is not None and self.role_for(user).has_capability(capability)

    def require(self, user: Optional[UserRecord], capability: str) -> Role:
        """
        Ensure the user holds a capability.

        Args:
            user: Acting user, None for anonymous callers
            capability: Capability string, e.g. "programs.manage"

        Returns:
            The user's Role

        Raises:
            UnauthorizedError: If no user is given
            ForbiddenError: If the role lacks the capability
        """
        role = self.role_for(user)
        if not role.has_capability(capability):
            logger.warning(f"User {user.id} ({role.slug}) denied capability {capability}")
            raise ForbiddenError(f"Role '{role.slug}' is not allowed to perform {capability}")
        return role
