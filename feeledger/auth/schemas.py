from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from feeledger.core.enums import STAFF_ROLES


class CurrentUser(BaseModel):
    """Authenticated caller. student_id is set for student accounts only."""

    id: UUID
    role: str
    student_id: Optional[UUID] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES
