from typing import Literal

from pydantic import BaseModel

# permissions an employee does not hold
ADMIN_ONLY = frozenset({"orders.delete", "withdrawals.delete", "coworking.delete"})

class Actor(BaseModel):
    id: str
    role: Literal["admin", "employee"] = "employee"

def role_permission_check(actor: Actor, permission: str) -> bool:
    return actor.role == "admin" or permission not in ADMIN_ONLY
