"""The acting identity passed explicitly into every mutating operation."""

import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    STUDENT = "student"
    REGISTRAR = "registrar"
    ACCOUNTING = "accounting"
    ADMIN = "admin"
    SYSTEM = "system"


STAFF_ROLES = (Role.REGISTRAR, Role.ACCOUNTING, Role.ADMIN)


@dataclass(frozen=True)
class Actor:
    user_id: int | None
    role: Role
    student_id: int | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES or self.role == Role.SYSTEM


SYSTEM_ACTOR = Actor(user_id=None, role=Role.SYSTEM)
