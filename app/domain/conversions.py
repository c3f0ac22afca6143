"""
Typed mappings between the editable preview and the shapes consumed
downstream: the map view and the group creation request.

Each direction is one pure function.
"""
import re
from typing import Any, List, Optional, Sequence

from pydantic import Field

from app.domain.models import (
    CamelModel,
    FormGroupsFromPreviewRequest,
    GroupSubmission,
    Plot,
    PreviewGroup,
    UngroupedPlot,
)

MAP_GROUP_ID_PREFIX = "group-"
_MAP_GROUP_ID = re.compile(rf"^{MAP_GROUP_ID_PREFIX}(\d+)$")


class MapGroupView(CamelModel):
    """A group as the map layer sees it."""
    temp_group_id: str
    group_number: int
    group_name: str
    rice_variety: str
    rice_variety_id: Optional[str] = None
    plot_count: int
    total_area: float
    centroid_lat: Optional[float] = None
    centroid_lng: Optional[float] = None
    group_boundary_geo_json: Optional[Any] = None
    plots: List[Plot] = Field(default_factory=list)


class MapPreview(CamelModel):
    """Everything the map layer renders for one pass."""
    total_groups_formed: int
    total_plots_grouped: int
    ungrouped_plots: int
    proposed_groups: List[MapGroupView] = Field(default_factory=list)
    ungrouped_plots_list: List[UngroupedPlot] = Field(default_factory=list)


def map_group_id(group_number: int) -> str:
    return f"{MAP_GROUP_ID_PREFIX}{group_number}"


def group_number_from_map_id(temp_group_id: str) -> int:
    """
    Recover the group number from a map group id (``group-<n>``).

    Raises:
        ValueError: If the id does not follow the map id format
    """
    match = _MAP_GROUP_ID.match(temp_group_id)
    if match is None:
        raise ValueError(f"Not a map group id: {temp_group_id!r}")
    return int(match.group(1))


def to_map_group(group: PreviewGroup) -> MapGroupView:
    return MapGroupView(
        temp_group_id=map_group_id(group.group_number),
        group_number=group.group_number,
        group_name=group.group_name,
        rice_variety=group.rice_variety_name,
        rice_variety_id=group.rice_variety_id,
        plot_count=group.plot_count,
        total_area=group.total_area,
        centroid_lat=group.centroid_lat,
        centroid_lng=group.centroid_lng,
        group_boundary_geo_json=group.group_boundary_geo_json,
        plots=list(group.plots),
    )


def to_map_preview(
    groups: Sequence[PreviewGroup],
    ungrouped: Sequence[UngroupedPlot],
) -> MapPreview:
    """Project edited groups and ungrouped plots into the map view shape."""
    return MapPreview(
        total_groups_formed=len(groups),
        total_plots_grouped=sum(g.plot_count for g in groups),
        ungrouped_plots=len(ungrouped),
        proposed_groups=[to_map_group(g) for g in groups],
        ungrouped_plots_list=list(ungrouped),
    )


def to_submission_group(group: PreviewGroup) -> GroupSubmission:
    """Strip a preview group down to what the creation endpoint accepts."""
    return GroupSubmission(
        group_name=group.group_name.strip(),
        rice_variety_id=group.rice_variety_id,
        planting_window_start=group.planting_window_start,
        planting_window_end=group.planting_window_end,
        median_planting_date=group.median_planting_date,
        plot_ids=list(group.plot_ids),
        supervisor_id=group.supervisor_id,
    )


def to_form_request(
    cluster_id: str,
    season_id: str,
    year: int,
    groups: Sequence[PreviewGroup],
    create_groups_immediately: bool = True,
) -> FormGroupsFromPreviewRequest:
    return FormGroupsFromPreviewRequest(
        cluster_id=cluster_id,
        season_id=season_id,
        year=year,
        create_groups_immediately=create_groups_immediately,
        groups=[to_submission_group(g) for g in groups],
    )
