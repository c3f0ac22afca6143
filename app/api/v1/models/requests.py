"""
API request models using Pydantic.

Bodies are camelCase on the wire, like the grouping service payloads.
"""
from typing import List, Optional
from pydantic import Field

from app.domain.models import CamelModel, FormationStrategy, GroupFormationParams


class OpenDialogRequest(GroupFormationParams):
    """Cluster, season and grouping parameters for a new dialog."""

    model_config = {
        "json_schema_extra": {
            "example": {
                "clusterId": "c-01",
                "seasonId": "s-2025-ws",
                "year": 2025,
                "strategy": "balanced",
                "proximityThresholdMeters": 2000,
                "plantingDateToleranceDays": 2,
                "minGroupAreaHa": 15,
                "maxGroupAreaHa": 50,
                "minPlots": 5,
                "maxPlots": 15,
                "autoAssignSupervisors": True,
            }
        }
    }


class UpdateParametersRequest(CamelModel):
    """Grouping parameters to change before the next recalculation."""
    strategy: Optional[FormationStrategy] = None
    proximity_threshold_meters: Optional[int] = None
    planting_date_tolerance_days: Optional[int] = None
    min_group_area_ha: Optional[float] = None
    max_group_area_ha: Optional[float] = None
    min_plots: Optional[int] = None
    max_plots: Optional[int] = None
    auto_assign_supervisors: Optional[bool] = None


class UpdateGroupRequest(CamelModel):
    """Editable group fields."""
    group_name: str = Field(examples=["Group A - OM5451"])


class AssignSupervisorRequest(CamelModel):
    """Supervisor to assign; null or "none" clears the assignment."""
    supervisor_id: Optional[str] = None


class AddPlotRequest(CamelModel):
    """A plot already known to the dialog (removed or ungrouped)."""
    plot_id: str


class HighlightRequest(CamelModel):
    """Hover and expansion state of the group list."""
    hovered_group: Optional[int] = None
    expanded_groups: List[int] = Field(default_factory=list)
