"""
Approver roles and the escalation ladder.

Role ids follow the procurement ERP's role table: lower id, higher authority.
"""

from enum import IntEnum
from typing import Dict, Union


class Role(IntEnum):
    """Approver populations"""
    DIRECTOR = 1
    MANAGER = 2
    OFFICER = 3

    @property
    def label(self) -> str:
        return ROLE_LABELS[self]

    @classmethod
    def parse(cls, value: Union['Role', int, str]) -> 'Role':
        """Accept a Role, its integer id or its name"""
        if isinstance(value, Role):
            return value
        if isinstance(value, str) and not value.isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown role: {value}")
        return cls(int(value))


ROLE_LABELS: Dict[Role, str] = {
    Role.DIRECTOR: "Director",
    Role.MANAGER: "Procurement Manager",
    Role.OFFICER: "Procurement Officer",
}

_ESCALATION_TARGETS: Dict[Role, Role] = {
    Role.OFFICER: Role.MANAGER,
    Role.MANAGER: Role.DIRECTOR,
    Role.DIRECTOR: Role.DIRECTOR,
}

_missing = set(Role) - set(_ESCALATION_TARGETS)
if _missing:
    raise RuntimeError(f"Roles without an escalation target: {sorted(_missing)}")


def escalation_target(role: Role) -> Role:
    """Role that takes over a stalled step; the top role maps to itself"""
    return _ESCALATION_TARGETS[role]
