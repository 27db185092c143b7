"""
Project: Dataflow Agent
File: templates.py

Catalogue of starter workflows. A template fixes the per-node field lists
(and display names) a conversation starts from; without one, the default
field sets from workflow_state apply.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dataflow_agent.workflow_state import (
    DEFAULT_REQUIRED_FIELDS,
    ROLE_ORDER,
    WorkflowState,
    new_workflow_state,
)

LOGGER = logging.getLogger("dataflow.templates")


class WorkflowTemplate(BaseModel):
    id: str
    name: str
    description: str
    node_names: Dict[str, str] = Field(default_factory=dict)
    required_fields: Dict[str, List[str]] = Field(default_factory=dict)
    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def parameters(self) -> List[str]:
        """Flat, ordered list of every field the template asks for."""
        out: List[str] = []
        for role in ROLE_ORDER:
            out.extend(self.required_fields.get(role, []))
        return out

    def to_wire(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


WORKFLOW_TEMPLATES: Dict[str, WorkflowTemplate] = {
    t.id: t
    for t in (
        WorkflowTemplate(
            id="shopify-to-snowflake",
            name="Shopify to Snowflake",
            description="Connect Shopify data to Snowflake data warehouse",
            node_names={
                "source": "Shopify Source",
                "transform": "Data Transform",
                "destination": "Snowflake Destination",
            },
            required_fields={role: list(fields) for role, fields in DEFAULT_REQUIRED_FIELDS.items()},
        ),
        WorkflowTemplate(
            id="api-to-database",
            name="API to Database",
            description="Extract data from API and load into database",
            node_names={
                "source": "API Source",
                "transform": "Data Transform",
                "destination": "Database Destination",
            },
            required_fields={
                "source": ["api_endpoint", "api_key"],
                "transform": ["operation", "field_mapping"],
                "destination": ["database_url", "table_name"],
            },
        ),
        WorkflowTemplate(
            id="file-to-warehouse",
            name="File to Data Warehouse",
            description="Process files and load into data warehouse",
            node_names={
                "source": "File Source",
                "transform": "Data Transform",
                "destination": "Warehouse Destination",
            },
            required_fields={
                "source": ["file_path", "file_format"],
                "transform": ["operation", "field_mapping"],
                "destination": ["warehouse_url", "target_table"],
            },
        ),
    )
}


def list_templates() -> List[WorkflowTemplate]:
    return list(WORKFLOW_TEMPLATES.values())


def get_template(template_id: str) -> WorkflowTemplate:
    tpl = WORKFLOW_TEMPLATES.get((template_id or "").strip().lower())
    if tpl is None:
        LOGGER.error("template_not_found", extra={"template_id": template_id})
        raise KeyError(f"Unknown workflow template: {template_id}")
    return tpl


def state_from_template(template: Optional[WorkflowTemplate] = None) -> WorkflowState:
    if template is None:
        return new_workflow_state()
    return new_workflow_state(template.required_fields, template.node_names)
