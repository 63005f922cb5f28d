"""
Pydantic schemas for API requests
"""

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field

from ..conditions import Condition, condition_from_dict
from ..templates import StepDefinition


# Approval schemas
class StartWorkflowRequest(BaseModel):
    entity_type: str
    entity_id: str
    template_id: Optional[str] = None  # Selected from entity_data when omitted
    entity_data: Optional[Dict[str, Any]] = None


class ResetWorkflowRequest(BaseModel):
    template_id: Optional[str] = None
    entity_data: Optional[Dict[str, Any]] = None


class StepDecisionRequest(BaseModel):
    decision: str = Field(..., description="APPROVE or REJECT")
    comments: Optional[str] = None
    signature_data: Optional[Any] = None
    expected_version: Optional[int] = None  # Step version the decision was made against


class ApproveStepRequest(BaseModel):
    comments: Optional[str] = None
    signature_data: Optional[Any] = None
    expected_version: Optional[int] = None


class RejectStepRequest(BaseModel):
    comments: Optional[str] = None
    expected_version: Optional[int] = None


class EscalateStepRequest(BaseModel):
    reason: str = Field(..., min_length=1)


# Template schemas
class StepDefinitionModel(BaseModel):
    sequence: int = Field(..., ge=1)
    required_role: Union[int, str] = Field(..., description="Role id or name (OFFICER, MANAGER, DIRECTOR)")
    name: str = ""
    is_required: bool = True
    min_amount: Optional[str] = None  # Decimal as string
    max_amount: Optional[str] = None
    sla_hours: Optional[int] = None

    def to_step(self) -> StepDefinition:
        return StepDefinition.from_dict(self.model_dump())


class CreateTemplateRequest(BaseModel):
    name: str
    entity_category: str
    steps: List[StepDefinitionModel] = Field(..., min_length=1)
    conditions: Optional[List[Dict[str, Any]]] = None  # None = unconditional
    description: str = ""
    is_active: bool = True


class UpdateTemplateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    steps: Optional[List[StepDefinitionModel]] = None
    conditions: Optional[List[Dict[str, Any]]] = None

    def to_changes(self) -> Dict[str, Any]:
        """Only the fields the caller actually sent"""
        changes = {}
        for key in self.model_fields_set:
            value = getattr(self, key)
            if key == 'steps':
                if value is None:
                    raise ValueError("steps cannot be null")
                value = [step.to_step() for step in value]
            elif key == 'conditions':
                value = parse_conditions(value)
            changes[key] = value
        return changes


def parse_conditions(conditions: Optional[List[Dict[str, Any]]]) -> Optional[List[Condition]]:
    if conditions is None:
        return None
    return [condition_from_dict(c) for c in conditions]
