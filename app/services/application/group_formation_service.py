"""
Application service: orchestration of the group formation dialog.

A GroupFormationWorkflow coordinates the grouping service client, the
editable PreviewSession and the MapRenderer for one open dialog. It holds
no grouping logic of its own: edits go to the session, rules to the
validation engine, drawing to the renderer.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union
from uuid import uuid4
import logging

from app.domain.models import (
    FormGroupsResponse,
    GroupFormationParams,
    NearbyGroup,
    Plot,
    PreviewGroup,
    PreviewGroupsResponse,
)
from app.infrastructure.api_constants import InvalidationKeys
from app.infrastructure.external_api_client import (
    ExternalAPIError,
    GroupingServiceClient,
)
from app.infrastructure.folium_export import render_html
from app.services.domain.group_validation import (
    ValidationFinding,
    ValidationRules,
)
from app.services.domain.map_renderer import LegendEntry, MapRenderer, RenderResult
from app.services.domain.preview_session import (
    IllegalEditError,
    PreviewSession,
    SupervisorWorkload,
)

logger = logging.getLogger(__name__)

InvalidationListener = Callable[[tuple[str, ...]], None]
GroupsCreatedCallback = Callable[[FormGroupsResponse], None]


class WorkflowPhase(str, Enum):
    IDLE = "idle"
    PREVIEWING = "previewing"
    EDITING = "editing"
    RECALCULATING = "recalculating"
    SUBMITTING = "submitting"
    DONE = "done"
    ERROR = "error"


class WorkflowStateError(Exception):
    """An operation was requested in a phase that does not allow it."""
    pass


class SubmissionBlockedError(WorkflowStateError):
    """Submission refused because the groups have blocking errors."""

    def __init__(self, findings: list[ValidationFinding]):
        errors = [f.message for f in findings if f.is_blocking]
        super().__init__(f"Cannot create groups: {'; '.join(errors)}")
        self.findings = findings


class DialogNotFoundError(LookupError):
    """No open dialog with the requested id."""

    def __init__(self, dialog_id: str):
        super().__init__(f"Dialog {dialog_id} not found")
        self.dialog_id = dialog_id


@dataclass
class Notification:
    """A user-facing message about the outcome of an operation."""
    type: str
    title: str
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class OperationFailure:
    """The last failed network operation."""
    operation: str
    message: str
    status_code: Optional[int] = None


class GroupFormationWorkflow:
    """
    State machine for one group formation dialog.

    Phases: idle -> previewing -> editing <-> recalculating -> submitting
    -> done, with error for a failed initial preview.

    Every preview request carries a generation number. A response is only
    applied if no newer request has been issued since; close() also bumps
    the generation so in-flight responses are dropped.
    """

    EDITABLE_PHASES = frozenset({WorkflowPhase.EDITING})

    def __init__(
        self,
        client: GroupingServiceClient,
        params: GroupFormationParams,
        dialog_id: Optional[str] = None,
        renderer: Optional[MapRenderer] = None,
        rules: Optional[ValidationRules] = None,
        on_groups_created: Optional[GroupsCreatedCallback] = None,
        invalidation_listeners: Iterable[InvalidationListener] = (),
    ):
        self.dialog_id = dialog_id or uuid4().hex
        self.client = client
        self.params = params
        self.renderer = renderer or MapRenderer()
        self.rules = rules
        self.on_groups_created = on_groups_created
        self.invalidation_listeners = list(invalidation_listeners)

        self.phase = WorkflowPhase.IDLE
        self.session: Optional[PreviewSession] = None
        self.result: Optional[FormGroupsResponse] = None
        self.last_error: Optional[OperationFailure] = None
        self.notifications: list[Notification] = []
        self.last_render: Optional[RenderResult] = None

        self.hovered_group: Optional[int] = None
        self.expanded_groups: set[int] = set()

        self._generation = 0
        self._pending_generation: Optional[int] = None

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_pending(self) -> bool:
        return self._pending_generation is not None

    def _notify(self, kind: str, title: str, message: str) -> Notification:
        notification = Notification(type=kind, title=title, message=message)
        self.notifications.append(notification)
        log = logger.warning if kind in ("error", "warning") else logger.info
        log(f"[{self.dialog_id}] {title}: {message}")
        return notification

    def _require_phase(self, *phases: WorkflowPhase) -> None:
        if self.phase not in phases:
            allowed = ", ".join(p.value for p in phases)
            raise WorkflowStateError(
                f"Operation not allowed in phase '{self.phase.value}' (expected {allowed})"
            )

    def _require_session(self) -> PreviewSession:
        self._require_phase(*self.EDITABLE_PHASES)
        if self.session is None:
            raise WorkflowStateError("No preview is loaded")
        return self.session

    def _render(self) -> Optional[RenderResult]:
        if self.session is None:
            return None
        self.last_render = self.renderer.render(
            self.session,
            hovered_group=self.hovered_group,
            expanded_groups=self.expanded_groups,
        )
        return self.last_render

    # ------------------------------------------------------------------
    # Preview lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> Optional[PreviewSession]:
        """
        Fetch the initial preview.

        Calling open() on a dialog that is already open does nothing.

        Raises:
            ExternalAPIError: If the preview request fails (phase becomes error)
        """
        if self.phase != WorkflowPhase.IDLE:
            logger.debug(f"[{self.dialog_id}] open() ignored in phase {self.phase.value}")
            return self.session
        self.phase = WorkflowPhase.PREVIEWING
        await self._fetch_preview(operation="preview")
        return self.session

    def update_parameters(self, **changes: Any) -> GroupFormationParams:
        """
        Change the grouping parameters used by the next recalculation.

        Raises:
            ValueError: If a value is out of range or identifies another cluster
        """
        if self.phase in (WorkflowPhase.SUBMITTING, WorkflowPhase.DONE):
            raise WorkflowStateError(f"Parameters are frozen in phase '{self.phase.value}'")
        fixed = {"cluster_id", "season_id", "year"} & set(changes)
        if fixed:
            raise ValueError(f"Parameters cannot be changed: {', '.join(sorted(fixed))}")
        self.params = GroupFormationParams.model_validate(
            {**self.params.model_dump(), **changes}
        )
        logger.debug(f"[{self.dialog_id}] Parameters updated: {changes}")
        return self.params

    async def recalculate(self) -> bool:
        """
        Re-run the preview with the current parameters.

        Success replaces the session and discards manual edits. Failure keeps
        the prior session.

        Returns:
            True if the response was applied, False if a newer request superseded it

        Raises:
            WorkflowStateError: If a preview request is already pending
            ExternalAPIError: If the request fails
        """
        self._require_phase(WorkflowPhase.EDITING, WorkflowPhase.ERROR)
        self.phase = (
            WorkflowPhase.RECALCULATING if self.session is not None else WorkflowPhase.PREVIEWING
        )
        return await self._fetch_preview(operation="recalculate")

    async def _fetch_preview(self, operation: str) -> bool:
        if self.is_pending:
            raise WorkflowStateError("A preview request is already in progress")

        self._generation += 1
        generation = self._generation
        self._pending_generation = generation
        try:
            response = await self.client.preview_groups(self.params)
            if generation != self._generation:
                logger.info(
                    f"[{self.dialog_id}] Discarding preview {generation}, "
                    f"newest request is {self._generation}"
                )
                return False
            self._apply_preview(response, operation)
        except ExternalAPIError as e:
            if generation != self._generation:
                logger.info(f"[{self.dialog_id}] Dropping stale failure of request {generation}")
                return False
            self._fail_preview(operation, e.message, e.status_code)
            raise
        except Exception as e:
            if generation != self._generation:
                logger.info(f"[{self.dialog_id}] Dropping stale failure of request {generation}")
                return False
            logger.exception(f"[{self.dialog_id}] Unexpected error during {operation}")
            self._fail_preview(operation, f"Unexpected error: {e}")
            raise
        finally:
            if self._pending_generation == generation:
                self._pending_generation = None
        return True

    def _fail_preview(self, operation: str, message: str, status_code: Optional[int] = None) -> None:
        self.last_error = OperationFailure(operation, message, status_code)
        if self.session is None:
            self.phase = WorkflowPhase.ERROR
            self._notify("error", "Failed to load preview", message)
        else:
            self.phase = WorkflowPhase.EDITING
            self._notify("error", "Failed to recalculate groups", message)

    def _apply_preview(self, response: PreviewGroupsResponse, operation: str) -> None:
        session = PreviewSession.from_preview(
            response,
            max_plots_per_group=self.params.max_plots,
            rules=self.rules,
        )
        self.session = session
        self.last_error = None
        self.hovered_group = None
        self.expanded_groups = set()
        self.phase = WorkflowPhase.EDITING
        self._render()

        groups = len(session.edited_groups)
        plots = sum(g.plot_count for g in session.edited_groups)
        if operation == "recalculate":
            self._notify("success", "Groups recalculated", f"Recalculated groups: {groups} groups with {plots} plots")
        else:
            self._notify("success", "Preview ready", f"Proposed {groups} groups with {plots} plots")

    def close(self) -> None:
        """Reset to idle and drop the session; in-flight responses are ignored."""
        self._generation += 1
        self._pending_generation = None
        self.session = None
        self.result = None
        self.last_error = None
        self.last_render = None
        self.hovered_group = None
        self.expanded_groups = set()
        self.renderer.clear()
        self.phase = WorkflowPhase.IDLE
        logger.info(f"[{self.dialog_id}] Dialog closed")

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def rename_group(self, group_number: int, name: str) -> PreviewGroup:
        session = self._require_session()
        group = session.rename_group(group_number, name)
        self._render()
        return group

    def update_group(self, group_number: int, **fields: Any) -> PreviewGroup:
        session = self._require_session()
        group = session.update_group(group_number, **fields)
        self._render()
        return group

    def assign_supervisor(self, group_number: int, supervisor_id: Optional[str]) -> PreviewGroup:
        session = self._require_session()
        group = session.assign_supervisor(group_number, supervisor_id)
        self._render()
        return group

    def remove_plot(self, group_number: int, plot_id: str) -> Plot:
        session = self._require_session()
        plot = session.remove_plot(group_number, plot_id)
        self._render()
        return plot

    def add_plot(self, group_number: int, plot: Union[Plot, str]) -> Plot:
        session = self._require_session()
        added = session.add_plot(group_number, plot)
        self._render()
        return added

    def suggest_groups(self, plot_id: str, limit: int = 3) -> list[NearbyGroup]:
        return self._require_session().suggest_groups(plot_id, limit)

    def validate(self) -> list[ValidationFinding]:
        return self._require_session().validate()

    def supervisor_workloads(self) -> list[SupervisorWorkload]:
        return self._require_session().supervisor_workloads()

    # ------------------------------------------------------------------
    # Map
    # ------------------------------------------------------------------

    def set_highlight(
        self,
        hovered_group: Optional[int] = None,
        expanded_groups: Optional[Iterable[int]] = None,
    ) -> None:
        """Update hover/expansion state; only paint properties change."""
        session = self._require_session()
        known = {g.group_number for g in session.edited_groups}
        requested = set(expanded_groups) if expanded_groups is not None else self.expanded_groups
        referenced = set(requested)
        if hovered_group is not None:
            referenced.add(hovered_group)
        unknown = referenced - known
        if unknown:
            raise IllegalEditError(f"Unknown group(s): {', '.join(map(str, sorted(unknown)))}")
        self.hovered_group = hovered_group
        self.expanded_groups = requested
        self.renderer.set_highlight(hovered_group, requested)

    def legend(self) -> list[LegendEntry]:
        self._require_session()
        return self.renderer.legend()

    def map_html(self) -> str:
        self._require_session()
        return render_html(self.renderer.surface, self.renderer.legend())

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self) -> FormGroupsResponse:
        """
        Create the edited groups.

        Raises:
            SubmissionBlockedError: If validation reports errors (no request is sent)
            WorkflowStateError: If not in the editing phase
            ExternalAPIError: If the request fails (phase returns to editing)
        """
        session = self._require_session()
        findings = session.validate()
        if any(f.is_blocking for f in findings):
            self._notify("error", "Cannot create groups", "Fix validation errors before creating groups")
            raise SubmissionBlockedError(findings)

        request = session.to_submission(create_groups_immediately=True)
        self.phase = WorkflowPhase.SUBMITTING
        try:
            result = await self.client.form_groups_from_preview(request)
        except ExternalAPIError as e:
            self.phase = WorkflowPhase.EDITING
            self.last_error = OperationFailure("submit", e.message, e.status_code)
            self._notify("error", "Failed to create groups", e.message)
            raise
        except Exception as e:
            logger.exception(f"[{self.dialog_id}] Unexpected error while creating groups")
            self.phase = WorkflowPhase.EDITING
            self.last_error = OperationFailure("submit", f"Unexpected error: {e}")
            self._notify("error", "Failed to create groups", f"Unexpected error: {e}")
            raise

        self.result = result
        self.last_error = None
        self.phase = WorkflowPhase.DONE
        self._notify("success", "Groups created", f"Created {result.groups_created} groups")
        for warning in result.warnings:
            self._notify("warning", "Warning", warning)

        cluster_id = session.cluster_id
        self.session = None
        self.renderer.clear()

        if self.on_groups_created is not None:
            self.on_groups_created(result)
        for key in InvalidationKeys.after_groups_created(cluster_id):
            for listener in self.invalidation_listeners:
                listener(key)
        return result


class WorkflowRegistry:
    """Open dialogs keyed by dialog id."""

    def __init__(
        self,
        client_factory: Callable[[], GroupingServiceClient],
        rules: Optional[ValidationRules] = None,
    ):
        self.client_factory = client_factory
        self.rules = rules
        self.invalidation_listeners: list[InvalidationListener] = []
        self.invalidated_keys: list[tuple[str, ...]] = []
        self._workflows: dict[str, GroupFormationWorkflow] = {}

    def subscribe(self, listener: InvalidationListener) -> None:
        self.invalidation_listeners.append(listener)

    def _record_invalidation(self, key: tuple[str, ...]) -> None:
        self.invalidated_keys.append(key)
        for listener in self.invalidation_listeners:
            listener(key)

    def create(
        self,
        params: GroupFormationParams,
        on_groups_created: Optional[GroupsCreatedCallback] = None,
    ) -> GroupFormationWorkflow:
        workflow = GroupFormationWorkflow(
            client=self.client_factory(),
            params=params,
            rules=self.rules,
            on_groups_created=on_groups_created,
            invalidation_listeners=[self._record_invalidation],
        )
        self._workflows[workflow.dialog_id] = workflow
        logger.info(f"Created dialog {workflow.dialog_id} for cluster {params.cluster_id}")
        return workflow

    def get(self, dialog_id: str) -> GroupFormationWorkflow:
        workflow = self._workflows.get(dialog_id)
        if workflow is None:
            raise DialogNotFoundError(dialog_id)
        return workflow

    def close(self, dialog_id: str) -> None:
        workflow = self.get(dialog_id)
        workflow.close()
        workflow.renderer.dispose()
        del self._workflows[dialog_id]

    def dialog_ids(self) -> list[str]:
        return list(self._workflows)

    def __len__(self) -> int:
        return len(self._workflows)
