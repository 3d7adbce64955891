import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Tuple

from warprelease.src.models.certificate import is_valid_team_id

PROGRAM_TYPES = ("individual", "organization", "enterprise")
TEAM_STATUSES = ("active", "inactive", "suspended")
MEMBER_ROLES = ("admin", "developer")

MAX_APPLICATIONS_PER_TEAM = 100

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+$")


@dataclass(frozen=True)
class TeamMember:
    email: str
    role: str = "developer"

    def __post_init__(self):
        email = str(self.email or "").strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValueError(f"Invalid member email: {self.email}")
        role = str(self.role or "").strip().lower()
        if role not in MEMBER_ROLES:
            raise ValueError(f"Invalid member role: {self.role}")
        object.__setattr__(self, "email", email)
        object.__setattr__(self, "role", role)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class Team:
    """An Apple developer team; every certificate and profile is scoped to one."""

    team_id: str
    name: str
    program_type: str = "individual"
    status: str = "active"
    members: Tuple[TeamMember, ...] = ()
    applications: Tuple[str, ...] = ()

    def __post_init__(self):
        if not is_valid_team_id(self.team_id):
            raise ValueError("Team ID must be 10 alphanumeric characters")
        if not str(self.name or "").strip():
            raise ValueError("Team name cannot be empty")

        program_type = str(self.program_type).lower()
        if program_type not in PROGRAM_TYPES:
            raise ValueError(f"Invalid program type: {self.program_type}")
        status = str(self.status).lower()
        if status not in TEAM_STATUSES:
            raise ValueError(f"Invalid team status: {self.status}")

        members = tuple(self.members or ())
        if program_type == "individual" and len(members) > 1:
            raise ValueError("Individual teams cannot have multiple members")

        object.__setattr__(self, "program_type", program_type)
        object.__setattr__(self, "status", status)
        object.__setattr__(self, "members", members)
        object.__setattr__(self, "applications", tuple(self.applications or ()))

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def is_individual(self) -> bool:
        return self.program_type == "individual"

    @property
    def is_enterprise(self) -> bool:
        return self.program_type == "enterprise"

    def has_member(self, email: str) -> bool:
        email = (email or "").strip().lower()
        return any(member.email == email for member in self.members)

    def admins(self) -> Tuple[TeamMember, ...]:
        return tuple(member for member in self.members if member.is_admin)

    def add_member(self, member: TeamMember) -> "Team":
        if self.is_individual and self.members:
            raise ValueError("Individual teams cannot have multiple members")
        if self.has_member(member.email):
            raise ValueError(f"Member with email {member.email} already exists")
        return replace(self, members=self.members + (member,))

    def remove_member(self, email: str) -> "Team":
        email = (email or "").strip().lower()
        return replace(
            self, members=tuple(m for m in self.members if m.email != email)
        )

    def manages_application(self, app_identifier: str) -> bool:
        return app_identifier in self.applications

    def add_application(self, app_identifier: str) -> "Team":
        if not app_identifier:
            raise ValueError("App identifier cannot be empty")
        if self.manages_application(app_identifier):
            raise ValueError(f"Team already manages application: {app_identifier}")
        if len(self.applications) >= MAX_APPLICATIONS_PER_TEAM:
            raise ValueError(
                f"Team has reached maximum applications limit: {MAX_APPLICATIONS_PER_TEAM}"
            )
        return replace(self, applications=self.applications + (app_identifier,))

    def with_status(self, status: str) -> "Team":
        return replace(self, status=status)

    @classmethod
    def from_config(cls, data: Dict[str, Any]) -> "Team":
        """Build a team from a ``[teams.<id>]`` config table"""
        members = tuple(
            TeamMember(email=m["email"], role=m.get("role", "developer"))
            for m in data.get("members", [])
        )
        return cls(
            team_id=data["team_id"],
            name=data.get("name") or data.get("team_name") or data["team_id"],
            program_type=data.get("program_type", "individual"),
            status=data.get("status", "active"),
            members=members,
            applications=tuple(data.get("applications", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "team_id": self.team_id,
            "name": self.name,
            "program_type": self.program_type,
            "status": self.status,
            "members": [{"email": m.email, "role": m.role} for m in self.members],
            "applications": list(self.applications),
        }
