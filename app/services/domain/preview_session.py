"""
Domain service: the editable working copy of a grouping preview.

A PreviewSession is seeded from the grouping service's preview response
and then mutated by user edits. Every plot of the original preview lives
in exactly one place at any time: a group, the removed-plots pool, or the
ungrouped-plots pool.

Edits are validated before anything changes; an illegal edit raises
IllegalEditError and leaves the session untouched.
"""
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union
from uuid import uuid4
import logging

from app.domain.conversions import (
    MapPreview,
    map_group_id,
    to_form_request,
    to_map_preview,
)
from app.domain.models import (
    FormGroupsFromPreviewRequest,
    NearbyGroup,
    Plot,
    PreviewGroup,
    PreviewGroupsResponse,
    PreviewSummary,
    SupervisorForAssignment,
    UngroupedPlot,
)
from app.services.domain.group_validation import (
    ValidationFinding,
    ValidationRules,
    can_add_plot,
    can_remove_plot,
    has_blocking_errors,
    validate_group_edit,
    validate_groups,
)
from app.utils.geometry import plot_center
from app.utils.spatial_helpers import rank_by_distance

logger = logging.getLogger(__name__)

NO_SUPERVISOR = "none"


class IllegalEditError(ValueError):
    """An edit the session refuses. Nothing was changed."""

    def __init__(self, reason: str, group_number: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.group_number = group_number


class GroupNotFoundError(LookupError):
    """No group with the requested number exists in the session."""

    def __init__(self, group_number: int):
        super().__init__(f"Group {group_number} not found")
        self.group_number = group_number


@dataclass(frozen=True)
class SupervisorWorkload:
    """A supervisor's load once this session's assignments are applied."""
    supervisor_id: str
    full_name: str
    assigned_group_numbers: tuple[int, ...]
    assigned_area: float
    projected_total_area: float
    remaining_area_capacity: Optional[float]

    @property
    def over_capacity(self) -> bool:
        return self.remaining_area_capacity is not None and self.remaining_area_capacity < 0


class PreviewSession:
    """
    Mutable projection of one preview response.

    Derived group fields (plot_count, total_area) are recomputed after
    every edit and cannot be set directly.
    """

    EDITABLE_FIELDS = frozenset({"group_name", "supervisor_id", "supervisor_name"})

    def __init__(
        self,
        cluster_id: str,
        season_id: str,
        year: int,
        groups: Iterable[PreviewGroup],
        ungrouped_plots: Iterable[UngroupedPlot] = (),
        available_supervisors: Iterable[SupervisorForAssignment] = (),
        summary: Optional[PreviewSummary] = None,
        max_plots_per_group: Optional[int] = None,
        rules: Optional[ValidationRules] = None,
    ):
        self.session_id = uuid4().hex
        self.cluster_id = cluster_id
        self.season_id = season_id
        self.year = year
        self.summary = summary or PreviewSummary()
        self.max_plots_per_group = max_plots_per_group
        self.rules = rules
        self.revision = 0

        self.edited_groups: list[PreviewGroup] = []
        for group in groups:
            seeded = self._derived(group.model_copy(deep=True))
            if seeded.plot_count != group.plot_count:
                logger.warning(
                    f"Group {group.group_number}: service reported {group.plot_count} plots, "
                    f"found {seeded.plot_count}"
                )
            if {p.plot_id for p in seeded.plots} != set(seeded.plot_ids):
                logger.warning(f"Group {group.group_number}: plot snapshots out of sync with plot ids")
            self.edited_groups.append(seeded)

        self.removed_plots: list[Plot] = []
        self.ungrouped_plots: list[UngroupedPlot] = list(ungrouped_plots)
        self.available_supervisors: list[SupervisorForAssignment] = list(available_supervisors)

        self.original_plot_ids = frozenset(
            [pid for g in self.edited_groups for pid in g.plot_ids]
            + [p.plot_id for p in self.ungrouped_plots]
        )

        logger.info(
            f"Seeded preview session {self.session_id}: {len(self.edited_groups)} groups, "
            f"{len(self.ungrouped_plots)} ungrouped plots"
        )

    @classmethod
    def from_preview(
        cls,
        response: PreviewGroupsResponse,
        max_plots_per_group: Optional[int] = None,
        rules: Optional[ValidationRules] = None,
    ) -> "PreviewSession":
        """Seed a new session from a preview response."""
        return cls(
            cluster_id=response.cluster_id,
            season_id=response.season_id,
            year=response.year,
            groups=response.proposed_groups,
            ungrouped_plots=response.ungrouped_plots,
            available_supervisors=response.available_supervisors,
            summary=response.summary,
            max_plots_per_group=max_plots_per_group,
            rules=rules,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _index_of(self, group_number: int) -> int:
        for i, group in enumerate(self.edited_groups):
            if group.group_number == group_number:
                return i
        raise GroupNotFoundError(group_number)

    def get_group(self, group_number: int) -> PreviewGroup:
        return self.edited_groups[self._index_of(group_number)]

    def get_supervisor(self, supervisor_id: str) -> Optional[SupervisorForAssignment]:
        return next(
            (s for s in self.available_supervisors if s.supervisor_id == supervisor_id),
            None,
        )

    def find_plot(self, plot_id: str) -> Optional[Plot]:
        """Look a plot up wherever it currently lives."""
        for group in self.edited_groups:
            for plot in group.plots:
                if plot.plot_id == plot_id:
                    return plot
        for plot in self.removed_plots:
            if plot.plot_id == plot_id:
                return plot
        for plot in self.ungrouped_plots:
            if plot.plot_id == plot_id:
                return plot
        return None

    def plot_locations(self) -> dict[str, list[str]]:
        """Map each known plot id to every place it currently appears."""
        locations: dict[str, list[str]] = {pid: [] for pid in self.original_plot_ids}
        for group in self.edited_groups:
            for pid in group.plot_ids:
                locations.setdefault(pid, []).append(map_group_id(group.group_number))
        for plot in self.removed_plots:
            locations.setdefault(plot.plot_id, []).append("removed")
        for plot in self.ungrouped_plots:
            locations.setdefault(plot.plot_id, []).append("ungrouped")
        return locations

    def integrity_violations(self) -> dict[str, list[str]]:
        """Plots that are missing (empty list) or present in more than one place."""
        return {
            pid: places
            for pid, places in self.plot_locations().items()
            if len(places) != 1
        }

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    @staticmethod
    def _derived(group: PreviewGroup) -> PreviewGroup:
        group.plot_count = len(group.plot_ids)
        group.total_area = sum(p.area for p in group.plots)
        return group

    def _replace(self, group_number: int, **changes: Any) -> PreviewGroup:
        index = self._index_of(group_number)
        updated = self._derived(self.edited_groups[index].model_copy(update=changes))
        self.edited_groups[index] = updated
        self.revision += 1
        return updated

    def update_group(self, group_number: int, **fields: Any) -> PreviewGroup:
        """
        Shallow-merge editable fields onto one group.

        Raises:
            IllegalEditError: If a non-editable field is given
            GroupNotFoundError: If the group does not exist
        """
        illegal = set(fields) - self.EDITABLE_FIELDS
        if illegal:
            raise IllegalEditError(
                f"Fields cannot be edited: {', '.join(sorted(illegal))}",
                group_number=group_number,
            )
        return self._replace(group_number, **fields)

    def rename_group(self, group_number: int, name: str) -> PreviewGroup:
        """Rename a group; the name is trimmed and the renamed group must pass the edit check."""
        trimmed = (name or "").strip()
        candidate = self.get_group(group_number).model_copy(update={"group_name": trimmed})
        problem = validate_group_edit(candidate)
        if problem:
            raise IllegalEditError(problem, group_number=group_number)
        return self.update_group(group_number, group_name=trimmed)

    def remove_plot(self, group_number: int, plot_id: str) -> Plot:
        """
        Move a plot from a group into the removed-plots pool.

        Returns:
            The removed plot

        Raises:
            IllegalEditError: If the plot is the group's last one or not a member
        """
        group = self.get_group(group_number)
        check = can_remove_plot(group, plot_id)
        if not check.ok:
            raise IllegalEditError(check.reason, group_number=group_number)

        plot = next((p for p in group.plots if p.plot_id == plot_id), None)
        if plot is None:
            raise IllegalEditError(
                f"Plot {plot_id} has no snapshot in Group {group_number}",
                group_number=group_number,
            )

        self._replace(
            group_number,
            plot_ids=[pid for pid in group.plot_ids if pid != plot_id],
            plots=[p for p in group.plots if p.plot_id != plot_id],
        )
        self.removed_plots.append(plot)
        logger.debug(f"Removed plot {plot_id} from group {group_number}")
        return plot

    def add_plot(self, group_number: int, plot: Union[Plot, str]) -> Plot:
        """
        Add a plot to a group.

        The plot is taken out of the removed-plots or ungrouped-plots pool
        when it is there. A plot id may be given instead of a Plot as long
        as the session already knows the plot.

        Raises:
            IllegalEditError: If the plot is already in this or another group,
                the group is full, or the plot id is unknown
        """
        group = self.get_group(group_number)

        if isinstance(plot, str):
            known = self.find_plot(plot)
            if known is None:
                raise IllegalEditError(f"Plot {plot} is not part of this preview", group_number)
            plot = known

        check = can_add_plot(group, plot.plot_id, self.edited_groups, self.max_plots_per_group)
        if not check.ok:
            raise IllegalEditError(check.reason, group_number=group_number)

        if isinstance(plot, UngroupedPlot):
            plot = plot.as_plot()

        self.removed_plots = [p for p in self.removed_plots if p.plot_id != plot.plot_id]
        self.ungrouped_plots = [p for p in self.ungrouped_plots if p.plot_id != plot.plot_id]

        self._replace(
            group_number,
            plot_ids=[*group.plot_ids, plot.plot_id],
            plots=[*group.plots, plot],
        )
        logger.debug(f"Added plot {plot.plot_id} to group {group_number}")
        return plot

    def assign_supervisor(self, group_number: int, supervisor_id: Optional[str]) -> PreviewGroup:
        """
        Assign a supervisor to a group, or clear the assignment.

        ``None`` and ``"none"`` both mean "no supervisor", which is a valid
        final state.

        Raises:
            IllegalEditError: If the supervisor is not in the available list
        """
        if supervisor_id is None or supervisor_id == NO_SUPERVISOR:
            return self.update_group(group_number, supervisor_id=None, supervisor_name=None)

        supervisor = self.get_supervisor(supervisor_id)
        if supervisor is None:
            raise IllegalEditError(
                f"Supervisor {supervisor_id} is not available for assignment",
                group_number=group_number,
            )
        if not supervisor.is_available:
            logger.warning(
                f"Assigning unavailable supervisor {supervisor_id} to group {group_number}: "
                f"{supervisor.unavailable_reason}"
            )
        return self.update_group(
            group_number,
            supervisor_id=supervisor.supervisor_id,
            supervisor_name=supervisor.full_name,
        )

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    def validate(self) -> list[ValidationFinding]:
        return validate_groups(self.edited_groups, self.rules)

    @property
    def has_blocking_errors(self) -> bool:
        return has_blocking_errors(self.validate())

    def to_submission(self, create_groups_immediately: bool = True) -> FormGroupsFromPreviewRequest:
        return to_form_request(
            cluster_id=self.cluster_id,
            season_id=self.season_id,
            year=self.year,
            groups=self.edited_groups,
            create_groups_immediately=create_groups_immediately,
        )

    def to_map_preview(self) -> MapPreview:
        return to_map_preview(self.edited_groups, self.ungrouped_plots)

    def _group_center(self, group: PreviewGroup) -> Optional[tuple[float, float]]:
        if group.centroid_lat is not None and group.centroid_lng is not None:
            return (group.centroid_lng, group.centroid_lat)
        centers = [c for c in (plot_center(p) for p in group.plots) if c is not None]
        if not centers:
            return None
        return (
            sum(c[0] for c in centers) / len(centers),
            sum(c[1] for c in centers) / len(centers),
        )

    def suggest_groups(self, plot_id: str, limit: int = 3) -> list[NearbyGroup]:
        """
        Rank the groups closest to a plot, nearest first.

        Groups already containing the plot are skipped. Returns an empty
        list when the plot has no usable location.
        """
        plot = self.find_plot(plot_id)
        if plot is None:
            raise IllegalEditError(f"Plot {plot_id} is not part of this preview")

        origin = plot_center(plot)
        if origin is None:
            return []

        candidates = []
        for group in self.edited_groups:
            if plot_id in group.plot_ids:
                continue
            center = self._group_center(group)
            if center is not None:
                candidates.append((group.group_number, center))

        return [
            NearbyGroup(
                group_id=map_group_id(number),
                group_number=number,
                distance=round(distance, 1),
            )
            for number, distance in rank_by_distance(origin, candidates, limit)
        ]

    def supervisor_workloads(self) -> list[SupervisorWorkload]:
        """Each available supervisor's load after this session's assignments."""
        workloads = []
        for supervisor in self.available_supervisors:
            assigned = [g for g in self.edited_groups if g.supervisor_id == supervisor.supervisor_id]
            assigned_area = sum(g.total_area for g in assigned)
            projected = supervisor.current_total_area + assigned_area
            remaining = (
                supervisor.max_area_capacity - projected
                if supervisor.max_area_capacity is not None
                else None
            )
            workloads.append(SupervisorWorkload(
                supervisor_id=supervisor.supervisor_id,
                full_name=supervisor.full_name,
                assigned_group_numbers=tuple(g.group_number for g in assigned),
                assigned_area=assigned_area,
                projected_total_area=projected,
                remaining_area_capacity=remaining,
            ))
        return workloads
