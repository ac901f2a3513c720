"""
Marketplace roles and ownership checks.

Auth hands every command an already-verified (user_id, role) pair. The
services trust the pair but still decide, per operation, whether that actor
may touch the target entity.

RULES:
- pharmacy: acts on orders/returns/ratings where pharmacy_id == user_id
- warehouse: acts on orders/returns/invoices where warehouse_id == user_id
- admin: reads everything; may manage invoices and return decisions
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import Forbidden


# =============================================================================
# ROLES
# =============================================================================

ROLE_PHARMACY = "pharmacy"
ROLE_WAREHOUSE = "warehouse"
ROLE_ADMIN = "admin"

VALID_ROLES = {ROLE_PHARMACY, ROLE_WAREHOUSE, ROLE_ADMIN}


@dataclass(frozen=True)
class Actor:
    """The verified caller of a command."""
    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_pharmacy(self) -> bool:
        return self.role == ROLE_PHARMACY

    @property
    def is_warehouse(self) -> bool:
        return self.role == ROLE_WAREHOUSE


# =============================================================================
# CHECKS
# =============================================================================

def require_role(actor: Actor, *roles: str) -> None:
    """Raise Forbidden unless the actor holds one of the roles."""
    if actor.role not in roles:
        raise Forbidden(
            f"Role '{actor.role}' may not perform this action",
            required_roles=sorted(roles),
        )


def is_pharmacy_owner(actor: Actor, entity) -> bool:
    return actor.is_pharmacy and entity.pharmacy_id == actor.user_id


def is_warehouse_owner(actor: Actor, entity) -> bool:
    return actor.is_warehouse and entity.warehouse_id == actor.user_id


def is_party(actor: Actor, entity) -> bool:
    """Pharmacy or warehouse on the entity, or an admin."""
    return actor.is_admin or is_pharmacy_owner(actor, entity) or is_warehouse_owner(actor, entity)


def ensure_party(actor: Actor, entity, what: str = "order") -> None:
    if not is_party(actor, entity):
        raise Forbidden(f"Not authorized to access this {what}", entity_id=getattr(entity, "id", None))


def ensure_pharmacy_owner(actor: Actor, entity, what: str = "order") -> None:
    if not is_pharmacy_owner(actor, entity):
        raise Forbidden(f"Only the ordering pharmacy may modify this {what}", entity_id=getattr(entity, "id", None))


def ensure_warehouse_owner(actor: Actor, entity, what: str = "order") -> None:
    if not is_warehouse_owner(actor, entity):
        raise Forbidden(f"Only the owning warehouse may modify this {what}", entity_id=getattr(entity, "id", None))


def ensure_warehouse_owner_or_admin(actor: Actor, entity, what: str = "invoice") -> None:
    if not (actor.is_admin or is_warehouse_owner(actor, entity)):
        raise Forbidden(f"Only the owning warehouse or an admin may modify this {what}", entity_id=getattr(entity, "id", None))
