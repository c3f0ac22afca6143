"""
API response models using Pydantic.
"""
from typing import Any, List, Optional
from pydantic import Field

from app.domain.models import (
    CamelModel,
    FormGroupsResponse,
    GroupFormationParams,
    NearbyGroup,
    Plot,
    PreviewGroup,
    PreviewSummary,
    SupervisorForAssignment,
    UngroupedPlot,
)
from app.services.application.group_formation_service import GroupFormationWorkflow


class FindingModel(CamelModel):
    """A single validation finding."""
    severity: str = Field(description="'error' blocks submission, 'warning' does not")
    message: str
    group_number: Optional[int] = None


class ValidationResponse(CamelModel):
    """Validation findings for the current groups."""
    findings: List[FindingModel]
    has_blocking_errors: bool


class NotificationModel(CamelModel):
    """A user-facing outcome message."""
    type: str
    title: str
    message: str


class FailureModel(CamelModel):
    """Last failed network operation."""
    operation: str
    message: str
    status_code: Optional[int] = None


class DialogStateResponse(CamelModel):
    """Full state of one group formation dialog."""
    dialog_id: str
    phase: str
    generation: int
    revision: int = Field(default=0, description="Edit counter of the current preview")
    params: GroupFormationParams
    summary: Optional[PreviewSummary] = None
    groups: List[PreviewGroup] = Field(default_factory=list)
    removed_plots: List[Plot] = Field(default_factory=list)
    ungrouped_plots: List[UngroupedPlot] = Field(default_factory=list)
    available_supervisors: List[SupervisorForAssignment] = Field(default_factory=list)
    validation: Optional[ValidationResponse] = None
    last_error: Optional[FailureModel] = None
    result: Optional[FormGroupsResponse] = None
    notifications: List[NotificationModel] = Field(default_factory=list)

    @classmethod
    def from_workflow(cls, workflow: GroupFormationWorkflow) -> "DialogStateResponse":
        session = workflow.session
        state = cls(
            dialog_id=workflow.dialog_id,
            phase=workflow.phase.value,
            generation=workflow.generation,
            params=workflow.params,
            result=workflow.result,
            last_error=(
                FailureModel(**vars(workflow.last_error)) if workflow.last_error else None
            ),
            notifications=[
                NotificationModel(type=n.type, title=n.title, message=n.message)
                for n in workflow.notifications
            ],
        )
        if session is not None:
            findings = session.validate()
            state.revision = session.revision
            state.summary = session.summary
            state.groups = list(session.edited_groups)
            state.removed_plots = list(session.removed_plots)
            state.ungrouped_plots = list(session.ungrouped_plots)
            state.available_supervisors = list(session.available_supervisors)
            state.validation = validation_response(findings)
        return state


class SuggestionsResponse(CamelModel):
    """Nearest groups for a plot."""
    plot_id: str
    suggestions: List[NearbyGroup]


class SupervisorWorkloadModel(CamelModel):
    """Projected load of one supervisor."""
    supervisor_id: str
    full_name: str
    assigned_group_numbers: List[int]
    assigned_area: float
    projected_total_area: float
    remaining_area_capacity: Optional[float] = None
    over_capacity: bool


class LegendEntryModel(CamelModel):
    label: str
    color: str
    count: int
    group_number: Optional[int] = None
    dashed: bool = False


class CameraModel(CamelModel):
    kind: str
    center: Optional[List[float]] = None
    zoom: Optional[float] = None
    bounds: Optional[List[List[float]]] = None
    padding: int = 0
    min_zoom: Optional[float] = None
    max_zoom: Optional[float] = None
    duration: int = 0


class MarkerModel(CamelModel):
    marker_id: str
    lng_lat: List[float]
    text: str
    style: dict[str, str] = Field(default_factory=dict)


class MapResponse(CamelModel):
    """Rendered map state: sources, layers, markers, camera and legend."""
    center: List[float]
    zoom: float
    sources: dict[str, Any]
    layers: List[dict[str, Any]]
    markers: List[MarkerModel]
    camera: Optional[CameraModel] = None
    legend: List[LegendEntryModel]


class SubmitResponse(CamelModel):
    """Outcome of creating the groups."""
    groups_created: int
    warnings: List[str] = Field(default_factory=list)
    notifications: List[NotificationModel] = Field(default_factory=list)


def validation_response(findings) -> ValidationResponse:
    return ValidationResponse(
        findings=[
            FindingModel(severity=f.severity, message=f.message, group_number=f.group_number)
            for f in findings
        ],
        has_blocking_errors=any(f.is_blocking for f in findings),
    )


def map_response(workflow: GroupFormationWorkflow) -> MapResponse:
    surface = workflow.renderer.surface
    style = surface.get_style()
    camera = surface.camera
    return MapResponse(
        center=list(surface.center),
        zoom=surface.zoom,
        sources=style["sources"],
        layers=style["layers"],
        markers=[
            MarkerModel(marker_id=m.marker_id, lng_lat=list(m.lng_lat), text=m.text, style=m.style)
            for m in surface.markers
        ],
        camera=CameraModel(
            kind=camera.kind,
            center=list(camera.center) if camera.center else None,
            zoom=camera.zoom,
            bounds=[list(corner) for corner in camera.bounds] if camera.bounds else None,
            padding=camera.padding,
            min_zoom=camera.min_zoom,
            max_zoom=camera.max_zoom,
            duration=camera.duration,
        ) if camera else None,
        legend=[LegendEntryModel(**vars(entry)) for entry in workflow.legend()],
    )
