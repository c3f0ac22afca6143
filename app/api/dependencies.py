"""
Dependency injection for FastAPI.
"""
from typing import Annotated, Optional
from fastapi import Depends, Path

from app.infrastructure.external_api_client import get_api_client
from app.services.application.group_formation_service import (
    GroupFormationWorkflow,
    WorkflowRegistry,
)
from app.services.domain.group_validation import ValidationRules


# Singleton instance
_registry: Optional[WorkflowRegistry] = None


def get_workflow_registry() -> WorkflowRegistry:
    """
    Get or create the registry of open dialogs.

    Returns:
        WorkflowRegistry instance
    """
    global _registry
    if _registry is None:
        _registry = WorkflowRegistry(
            client_factory=get_api_client,
            rules=ValidationRules.from_settings(),
        )
    return _registry


def get_workflow(
    dialog_id: Annotated[str, Path(description="Identifier of the open dialog")],
    registry: Annotated[WorkflowRegistry, Depends(get_workflow_registry)],
) -> GroupFormationWorkflow:
    """
    Resolve the workflow of an open dialog.

    Raises:
        DialogNotFoundError: If no such dialog is open
    """
    return registry.get(dialog_id)


# Type aliases for cleaner route signatures
RegistryDep = Annotated[WorkflowRegistry, Depends(get_workflow_registry)]
WorkflowDep = Annotated[GroupFormationWorkflow, Depends(get_workflow)]
