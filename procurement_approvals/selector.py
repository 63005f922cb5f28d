"""
Workflow selection: picks the template an entity should be routed through.
"""

from typing import Any, Dict, Optional, Union

from .conditions import EntitySnapshot, conditions_match
from .logging_config import get_logger
from .templates import EntityType, WorkflowTemplate, WorkflowTemplateCatalog, default_template_for


class WorkflowSelector:
    """Matches entities against stored templates, falling back to built-in defaults"""

    def __init__(self, catalog: WorkflowTemplateCatalog):
        self.catalog = catalog
        self.logger = get_logger("procurement_approvals.selector")

    def select_workflow(
        self,
        entity_type: Union[EntityType, str],
        entity_data: Optional[Union[EntitySnapshot, Dict[str, Any]]] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> WorkflowTemplate:
        """
        Return the newest active template for the entity type whose
        conditions match, else the built-in default for the type.

        Never fails: a storage error is logged and the default is used.
        """
        entity_type = EntityType.parse(entity_type)
        snapshot = entity_data if isinstance(entity_data, EntitySnapshot) \
            else EntitySnapshot.from_dict(entity_data)
        if context:
            snapshot.extra.setdefault('context', context)

        try:
            candidates = self.catalog.list_templates(entity_type=entity_type, active_only=True)
        except Exception:
            self.logger.exception(
                f"Template lookup failed for {entity_type.value}; using built-in default"
            )
            return default_template_for(entity_type)

        for template in candidates:
            if template.is_builtin:
                continue
            if conditions_match(template.conditions, snapshot):
                self.logger.debug(f"Selected template {template.id} for {entity_type.value}")
                return template

        return default_template_for(entity_type)
