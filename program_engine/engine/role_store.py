"""
Role Store for the Program Engine.

Reads role definitions from roles.yaml and resolves a system role slug to
its allowed process types and capability set.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from ..models import Role

logger = logging.getLogger(__name__)

ADMIN_ROLE_SLUG = "admin"


class RoleStore:
    """
    Resolves system roles to capabilities.

    Roles are loaded from ``roles.yaml`` in the configured directory.
    A slug with no definition falls back to an admin-only allowance:
    the ``admin`` slug gets every capability, anything else gets none.
    """

    def __init__(self, config_dir: Optional[Union[str, Path]] = None):
        """
        Initialize the role store.

        Args:
            config_dir: Directory containing roles.yaml.
                       Defaults to the engine directory
        """
        if config_dir is None:
            config_dir = Path(__file__).parent
        else:
            config_dir = Path(config_dir)

        self.config_dir = config_dir
        self.roles: Dict[str, Role] = {}

        self._load_configurations()

    def _load_configurations(self):
        """Load role definitions from YAML."""
        roles_file = self.config_dir / "roles.yaml"
        if not roles_file.exists():
            logger.warning(f"Roles file not found: {roles_file}")
            return

        try:
            with open(roles_file, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            for slug, role_data in (data.get("roles") or {}).items():
                role_data = role_data or {}
                self.roles[slug] = Role(
                    slug=slug,
                    name=role_data.get("name", slug.title()),
                    allowed_process_types=role_data.get("allowed_process_types", []),
                    permissions=role_data.get("permissions", []),
                    ui_permissions=role_data.get("ui_permissions", []),
                    default_dashboard_slug=role_data.get("default_dashboard_slug"),
                )
            logger.info(f"Loaded {len(self.roles)} roles from {roles_file}")

        except Exception as e:
            logger.error(f"Failed to load role configuration: {e}")
            raise

    def get_role(self, slug: Optional[str]) -> Role:
        """
        Get the role definition for a slug.

        Args:
            slug: System role slug

        Returns:
            The configured Role, or the admin-only fallback
        """
        slug = slug or ""
        role = self.roles.get(slug)
        if role:
            return role

        logger.debug(f"No role configured for '{slug}', using admin-only fallback")
        if slug == ADMIN_ROLE_SLUG:
            return Role(
                slug=ADMIN_ROLE_SLUG,
                name="Administrator",
                allowed_process_types=["*"],
                permissions=["*"],
                ui_permissions=["*"],
            )
        return Role(slug=slug, name=slug.title() or "Unknown")

    def list_roles(self) -> List[Role]:
        return list(self.roles.values())

    def reload(self):
        """Reload role definitions from disk."""
        self.roles = {}
        self._load_configurations()
