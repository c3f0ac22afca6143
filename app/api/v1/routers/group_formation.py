"""
API router for group formation dialogs.
"""
from fastapi import APIRouter, Path, Query, status
from fastapi.responses import HTMLResponse, Response
from typing import Annotated
import logging

from app.api.dependencies import RegistryDep, WorkflowDep
from app.api.v1.models.requests import (
    AddPlotRequest,
    AssignSupervisorRequest,
    HighlightRequest,
    OpenDialogRequest,
    UpdateGroupRequest,
    UpdateParametersRequest,
)
from app.api.v1.models.responses import (
    DialogStateResponse,
    MapResponse,
    NotificationModel,
    SubmitResponse,
    SuggestionsResponse,
    SupervisorWorkloadModel,
    ValidationResponse,
    map_response,
    validation_response,
)
from app.domain.models import GroupFormationParams, PreviewGroup
from app.infrastructure.external_api_client import ExternalAPIError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/group-formation",
    tags=["group-formation"],
)

GroupNumber = Annotated[int, Path(description="Group number within the preview", ge=1)]
PlotId = Annotated[str, Path(description="Plot identifier")]


@router.post(
    "/dialogs",
    response_model=DialogStateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a group formation dialog",
    description="""
    Open a dialog for a cluster and season and fetch the grouping preview.

    A failed preview still opens the dialog: it is returned in the
    `error` phase with `lastError` set, and can be retried through
    the recalculate endpoint.
    """,
)
async def open_dialog(
    body: OpenDialogRequest,
    registry: RegistryDep,
) -> DialogStateResponse:
    params = GroupFormationParams.model_validate(body.model_dump())
    workflow = registry.create(params)
    try:
        await workflow.open()
    except ExternalAPIError as e:
        logger.warning(f"Dialog {workflow.dialog_id} opened without preview: {e.message}")
    return DialogStateResponse.from_workflow(workflow)


@router.get(
    "/dialogs/{dialog_id}",
    response_model=DialogStateResponse,
    summary="Get dialog state",
)
async def get_dialog(workflow: WorkflowDep) -> DialogStateResponse:
    return DialogStateResponse.from_workflow(workflow)


@router.delete(
    "/dialogs/{dialog_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Close a dialog and discard its preview",
)
async def close_dialog(workflow: WorkflowDep, registry: RegistryDep) -> Response:
    registry.close(workflow.dialog_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch(
    "/dialogs/{dialog_id}/parameters",
    response_model=GroupFormationParams,
    summary="Update grouping parameters",
    description="Parameters take effect on the next recalculation.",
)
async def update_parameters(
    body: UpdateParametersRequest,
    workflow: WorkflowDep,
) -> GroupFormationParams:
    return workflow.update_parameters(**body.model_dump(exclude_none=True))


@router.post(
    "/dialogs/{dialog_id}/recalculate",
    response_model=DialogStateResponse,
    summary="Recalculate the preview",
    description="""
    Re-run the grouping preview with the current parameters.

    All manual edits are discarded when the new preview arrives. On failure
    the previous preview is kept and the error is reported.
    """,
)
async def recalculate(workflow: WorkflowDep) -> DialogStateResponse:
    await workflow.recalculate()
    return DialogStateResponse.from_workflow(workflow)


@router.patch(
    "/dialogs/{dialog_id}/groups/{group_number}",
    response_model=PreviewGroup,
    summary="Rename a group",
)
async def update_group(
    group_number: GroupNumber,
    body: UpdateGroupRequest,
    workflow: WorkflowDep,
) -> PreviewGroup:
    return workflow.rename_group(group_number, body.group_name)


@router.put(
    "/dialogs/{dialog_id}/groups/{group_number}/supervisor",
    response_model=PreviewGroup,
    summary="Assign or clear a group's supervisor",
)
async def assign_supervisor(
    group_number: GroupNumber,
    body: AssignSupervisorRequest,
    workflow: WorkflowDep,
) -> PreviewGroup:
    return workflow.assign_supervisor(group_number, body.supervisor_id)


@router.delete(
    "/dialogs/{dialog_id}/groups/{group_number}/plots/{plot_id}",
    response_model=DialogStateResponse,
    summary="Remove a plot from a group",
    description="The plot moves to the removed-plots list. A group's last plot cannot be removed.",
)
async def remove_plot(
    group_number: GroupNumber,
    plot_id: PlotId,
    workflow: WorkflowDep,
) -> DialogStateResponse:
    workflow.remove_plot(group_number, plot_id)
    return DialogStateResponse.from_workflow(workflow)


@router.post(
    "/dialogs/{dialog_id}/groups/{group_number}/plots",
    response_model=DialogStateResponse,
    summary="Add a removed or ungrouped plot to a group",
)
async def add_plot(
    group_number: GroupNumber,
    body: AddPlotRequest,
    workflow: WorkflowDep,
) -> DialogStateResponse:
    workflow.add_plot(group_number, body.plot_id)
    return DialogStateResponse.from_workflow(workflow)


@router.get(
    "/dialogs/{dialog_id}/plots/{plot_id}/suggestions",
    response_model=SuggestionsResponse,
    summary="Nearest groups for a plot",
)
async def suggest_groups(
    plot_id: PlotId,
    workflow: WorkflowDep,
    limit: Annotated[int, Query(ge=1, le=10)] = 3,
) -> SuggestionsResponse:
    return SuggestionsResponse(
        plot_id=plot_id,
        suggestions=workflow.suggest_groups(plot_id, limit),
    )


@router.get(
    "/dialogs/{dialog_id}/supervisors/workloads",
    response_model=list[SupervisorWorkloadModel],
    summary="Projected supervisor workloads",
)
async def supervisor_workloads(workflow: WorkflowDep) -> list[SupervisorWorkloadModel]:
    return [
        SupervisorWorkloadModel(
            supervisor_id=w.supervisor_id,
            full_name=w.full_name,
            assigned_group_numbers=list(w.assigned_group_numbers),
            assigned_area=w.assigned_area,
            projected_total_area=w.projected_total_area,
            remaining_area_capacity=w.remaining_area_capacity,
            over_capacity=w.over_capacity,
        )
        for w in workflow.supervisor_workloads()
    ]


@router.get(
    "/dialogs/{dialog_id}/validation",
    response_model=ValidationResponse,
    summary="Validate the current groups",
)
async def validate(workflow: WorkflowDep) -> ValidationResponse:
    return validation_response(workflow.validate())


@router.get(
    "/dialogs/{dialog_id}/map",
    response_model=MapResponse,
    summary="Rendered map state",
)
async def get_map(workflow: WorkflowDep) -> MapResponse:
    return map_response(workflow)


@router.get(
    "/dialogs/{dialog_id}/map.html",
    response_class=HTMLResponse,
    summary="Rendered map as a standalone page",
)
async def get_map_html(workflow: WorkflowDep) -> HTMLResponse:
    return HTMLResponse(content=workflow.map_html())


@router.put(
    "/dialogs/{dialog_id}/highlight",
    response_model=MapResponse,
    summary="Set hovered and expanded groups",
)
async def set_highlight(body: HighlightRequest, workflow: WorkflowDep) -> MapResponse:
    workflow.set_highlight(body.hovered_group, body.expanded_groups)
    return map_response(workflow)


@router.post(
    "/dialogs/{dialog_id}/submit",
    response_model=SubmitResponse,
    summary="Create the groups",
    description="""
    Create the edited groups. Refused with 409 while validation reports
    errors; warnings do not block.
    """,
)
async def submit(workflow: WorkflowDep) -> SubmitResponse:
    result = await workflow.submit()
    return SubmitResponse(
        groups_created=result.groups_created,
        warnings=result.warnings,
        notifications=[
            NotificationModel(type=n.type, title=n.title, message=n.message)
            for n in workflow.notifications
        ],
    )
