"""Actor model - the user performing a request."""

from typing import Optional

from pydantic import BaseModel

from taskgate.models.enums import Role


class Actor(BaseModel):
    """Authenticated user as asserted by the upstream gateway."""

    id: str
    role: Role
    team_id: Optional[str] = None

    model_config = {"frozen": True}

    def is_privileged(self) -> bool:
        """Admin and managing director see and do everything."""
        return self.role in (Role.ADMIN, Role.MANAGING_DIRECTOR)

    def leads_team(self, team_id: Optional[str]) -> bool:
        return (
            self.role == Role.TEAM_LEAD
            and team_id is not None
            and self.team_id == team_id
        )
