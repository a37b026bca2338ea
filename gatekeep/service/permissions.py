from __future__ import annotations

from typing import List, Optional, Protocol

from gatekeep.logging import get_logger
from gatekeep.storage.models import Permission

logger = get_logger(__name__)


class PermissionStore(Protocol):
    def get_permission(self, permission_id: str) -> Optional[Permission]: ...

    def get_permission_by_name(self, name: str) -> Optional[Permission]: ...

    def list_permissions(self) -> List[Permission]: ...

    def list_permissions_by_resource(self, resource: str) -> List[Permission]: ...

    def create_permission(self, permission: Permission) -> Permission: ...

    def update_permission(self, permission: Permission) -> Permission: ...

    def delete_permission(self, permission_id: str) -> bool: ...


class PermissionCatalog:
    """RBAC permission records.

    Lookups return ``None``/``[]`` on a miss because they sit on authorization
    hot paths where absence is an ordinary answer. ``name`` is unique; the
    ``(resource, action)`` pair is not, so callers must not key on it.
    """

    def __init__(self, store: PermissionStore) -> None:
        self.store = store
        self.logger = logger

    def find_by_id(self, permission_id: str) -> Optional[Permission]:
        return self.store.get_permission(permission_id)

    def find_by_name(self, name: str) -> Optional[Permission]:
        return self.store.get_permission_by_name(name)

    def find_all(self) -> List[Permission]:
        return self.store.list_permissions()

    def find_by_resource(self, resource: str) -> List[Permission]:
        return self.store.list_permissions_by_resource(resource)

    def create(self, permission: Permission) -> Permission:
        created = self.store.create_permission(permission)
        self.logger.info(
            "permission_created",
            permission_id=created.id,
            name=created.name,
            resource=created.resource,
            action=created.action,
        )
        return created

    def update(self, permission: Permission) -> Permission:
        updated = self.store.update_permission(permission)
        self.logger.info("permission_updated", permission_id=updated.id, name=updated.name)
        return updated

    def delete(self, permission_id: str) -> bool:
        """Remove a permission; ``False`` when it was already gone."""
        deleted = self.store.delete_permission(permission_id)
        if deleted:
            self.logger.info("permission_deleted", permission_id=permission_id)
        return deleted
