from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from tenantauth.logging import get_logger
from tenantauth.requests import RoleRequest
from tenantauth.service.claims import ClaimLike, parse_claims
from tenantauth.service.errors import BadRequestError, NotFoundError
from tenantauth.storage.base import IdentityStore
from tenantauth.storage.common import generate_uuid
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import Role

logger = get_logger(__name__)


def _role_name(name: str) -> str:
    return name.strip().lower()


class RoleService:
    """Named roles, each owning an ordered list of claims."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def create(self, request: RoleRequest) -> Role:
        name = _role_name(request.name)
        if self.store.get_role_by_name(name):
            raise BadRequestError(f'Role with name "{name}" already exists')
        role = Role(
            id=generate_uuid(),
            name=name,
            description=request.description,
            claims=parse_claims(request.claims),
        )
        try:
            created = self.store.create_role(role)
        except ConstraintViolation as exc:
            raise BadRequestError(f'Role with name "{name}" already exists') from exc
        logger.info("role_created", role=name, claims=len(role.claims))
        return created

    def ensure(
        self, name: str, claims: Iterable[ClaimLike] = (), description: Optional[str] = None
    ) -> Role:
        """Return the named role, creating it when it does not exist yet."""
        existing = self.find_by_name(name)
        if existing:
            return existing
        return self.create(
            RoleRequest(name=name, description=description, claims=[str(c) for c in claims])
        )

    def update(self, role_id: str, request: RoleRequest) -> Role:
        role = self.get_by_id(role_id)
        name = _role_name(request.name)
        if name != role.name:
            clash = self.store.get_role_by_name(name)
            if clash and clash.id != role.id:
                raise BadRequestError(f'Role with name "{name}" already exists')
        role.name = name
        role.description = request.description
        role.claims = parse_claims(request.claims)
        try:
            updated = self.store.update_role(role)
        except ConstraintViolation as exc:
            raise BadRequestError(f'Role with name "{name}" already exists') from exc
        logger.info("role_updated", role_id=role_id, role=name)
        return updated

    def find_by_id(self, role_id: str) -> Optional[Role]:
        return self.store.get_role(role_id)

    def get_by_id(self, role_id: str) -> Role:
        role = self.find_by_id(role_id)
        if role is None:
            raise NotFoundError(f"Role {role_id} not found", detail={"role_id": role_id})
        return role

    def find_by_name(self, name: str) -> Optional[Role]:
        return self.store.get_role_by_name(_role_name(name))

    def get_by_name(self, name: str) -> Role:
        role = self.find_by_name(name)
        if role is None:
            raise NotFoundError(f"Role {name} not found", detail={"role": name})
        return role

    def get_by_names(self, names: Sequence[str]) -> List[Role]:
        """Resolve every name or fail; the result follows the requested order."""
        wanted: List[str] = []
        for name in names:
            normalized = _role_name(name)
            if normalized not in wanted:
                wanted.append(normalized)
        if not wanted:
            return []
        by_name = {role.name: role for role in self.store.get_roles_by_names(wanted)}
        missing = [name for name in wanted if name not in by_name]
        if missing:
            raise NotFoundError(
                f"One or more roles not found: {', '.join(missing)}",
                detail={"roles": missing},
            )
        return [by_name[name] for name in wanted]

    def get_all(self) -> List[Role]:
        return self.store.list_roles()

    def delete(self, role_id: str) -> None:
        role = self.get_by_id(role_id)
        self.store.delete_role(role_id)
        logger.info("role_deleted", role_id=role_id, role=role.name)
