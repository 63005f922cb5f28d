"""
Template Selection Conditions

Declarative conditions attached to workflow templates and the entity
snapshot they are evaluated against. Each condition kind is its own
dataclass tagged with a ConditionKind; evaluation is a pure function of the
condition and the snapshot.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class ConditionKind(Enum):
    """Kinds of template selection conditions"""
    VALUE_THRESHOLD = "VALUE_THRESHOLD"
    DEPARTMENT = "DEPARTMENT"
    RISK_LEVEL = "RISK_LEVEL"
    PROJECT_TYPE = "PROJECT_TYPE"


@dataclass(frozen=True)
class ValueThreshold:
    """Matches when the entity value is strictly above the threshold"""
    threshold: Decimal
    kind = ConditionKind.VALUE_THRESHOLD


@dataclass(frozen=True)
class Department:
    name: str
    kind = ConditionKind.DEPARTMENT


@dataclass(frozen=True)
class RiskLevel:
    level: str
    kind = ConditionKind.RISK_LEVEL


@dataclass(frozen=True)
class ProjectType:
    project_type: str
    kind = ConditionKind.PROJECT_TYPE


Condition = Union[ValueThreshold, Department, RiskLevel, ProjectType]


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a number or numeric string to Decimal, None if not numeric"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


@dataclass
class EntitySnapshot:
    """The fields of a business entity that workflow routing looks at"""
    value: Optional[Decimal] = None
    department: Optional[str] = None
    risk_level: Optional[str] = None
    project_type: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'EntitySnapshot':
        """Build a snapshot from free-form entity data (camelCase or snake_case keys)"""
        if not data:
            return cls()
        known = {'value', 'department', 'risk_level', 'riskLevel', 'project_type', 'projectType'}
        return cls(
            value=to_decimal(data.get('value')),
            department=data.get('department'),
            risk_level=data.get('risk_level', data.get('riskLevel')),
            project_type=data.get('project_type', data.get('projectType')),
            extra={k: v for k, v in data.items() if k not in known}
        )


def evaluate_condition(condition: Condition, snapshot: EntitySnapshot) -> bool:
    """Evaluate a single condition against an entity snapshot"""
    kind = condition.kind
    if kind is ConditionKind.VALUE_THRESHOLD:
        return snapshot.value is not None and snapshot.value > condition.threshold
    elif kind is ConditionKind.DEPARTMENT:
        return snapshot.department == condition.name
    elif kind is ConditionKind.RISK_LEVEL:
        return snapshot.risk_level == condition.level
    elif kind is ConditionKind.PROJECT_TYPE:
        return snapshot.project_type == condition.project_type
    raise ValueError(f"Unsupported condition kind: {kind}")


def conditions_match(conditions: Optional[List[Condition]], snapshot: EntitySnapshot) -> bool:
    """
    Short-circuit OR over a template's conditions.

    A template without a condition list (None) matches every entity; an
    empty list matches nothing.
    """
    if conditions is None:
        return True
    return any(evaluate_condition(condition, snapshot) for condition in conditions)


def condition_to_dict(condition: Condition) -> Dict[str, Any]:
    """Serialize a condition to its tagged dict form"""
    kind = condition.kind
    if kind is ConditionKind.VALUE_THRESHOLD:
        return {'type': kind.value, 'threshold': str(condition.threshold)}
    elif kind is ConditionKind.DEPARTMENT:
        return {'type': kind.value, 'department': condition.name}
    elif kind is ConditionKind.RISK_LEVEL:
        return {'type': kind.value, 'riskLevel': condition.level}
    elif kind is ConditionKind.PROJECT_TYPE:
        return {'type': kind.value, 'projectType': condition.project_type}
    raise ValueError(f"Unsupported condition kind: {kind}")


def condition_from_dict(data: Dict[str, Any]) -> Condition:
    """Parse a tagged dict such as {"type": "VALUE_THRESHOLD", "threshold": 50000}"""
    try:
        kind = ConditionKind(str(data['type']).upper())
    except (KeyError, ValueError):
        raise ValueError(f"Unknown condition type: {data.get('type')!r}")

    if kind is ConditionKind.VALUE_THRESHOLD:
        threshold = to_decimal(data.get('threshold'))
        if threshold is None:
            raise ValueError("VALUE_THRESHOLD condition requires a numeric threshold")
        return ValueThreshold(threshold)
    elif kind is ConditionKind.DEPARTMENT:
        return Department(_required(data, kind, 'department', 'name'))
    elif kind is ConditionKind.RISK_LEVEL:
        return RiskLevel(_required(data, kind, 'riskLevel', 'risk_level', 'level'))
    return ProjectType(_required(data, kind, 'projectType', 'project_type'))


def _required(data: Dict[str, Any], kind: ConditionKind, *keys: str) -> str:
    for key in keys:
        if data.get(key):
            return str(data[key])
    raise ValueError(f"{kind.value} condition requires one of: {', '.join(keys)}")
