"""
Unit tests for the group formation workflow.

Tests cover:
- Opening a dialog and phase transitions
- Recalculation replacing the session
- Stale responses being discarded
- Failure handling and notifications
- Recovery from malformed upstream replies
- Blocked and successful submission
- Completion callbacks and cache invalidation
- Dialog registry
"""
import asyncio
import httpx
import pytest
import respx
from tenacity import wait_none

from app.domain.models import FormGroupsResponse
from app.infrastructure.external_api_client import ExternalAPIError, GroupingServiceClient
from app.services.application.group_formation_service import (
    DialogNotFoundError,
    GroupFormationWorkflow,
    SubmissionBlockedError,
    WorkflowPhase,
    WorkflowRegistry,
    WorkflowStateError,
)
from app.services.domain.preview_session import IllegalEditError


@pytest.fixture
def workflow(mock_api_client, sample_params) -> GroupFormationWorkflow:
    return GroupFormationWorkflow(client=mock_api_client, params=sample_params)


def renamed(preview, name: str):
    """Copy of a preview whose first group carries a different name."""
    groups = [g.model_copy() for g in preview.proposed_groups]
    groups[0] = groups[0].model_copy(update={"group_name": name})
    return preview.model_copy(update={"proposed_groups": groups})


# ============================================================
# Open and Close Tests
# ============================================================

class TestOpen:
    """Tests for the initial preview."""

    @pytest.mark.asyncio
    async def test_open_loads_preview(self, workflow, mock_api_client):
        session = await workflow.open()

        assert workflow.phase == WorkflowPhase.EDITING
        assert session is workflow.session
        assert len(session.edited_groups) == 2
        mock_api_client.preview_groups.assert_awaited_once_with(workflow.params)
        assert workflow.notifications[-1].message == "Proposed 2 groups with 6 plots"

    @pytest.mark.asyncio
    async def test_open_renders_map(self, workflow):
        await workflow.open()

        assert workflow.renderer.surface.get_layer("plot-fill-p1") is not None
        assert workflow.last_render is not None

    @pytest.mark.asyncio
    async def test_open_twice_fetches_once(self, workflow, mock_api_client):
        await workflow.open()
        await workflow.open()

        assert mock_api_client.preview_groups.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_open_enters_error_phase(self, workflow, mock_api_client):
        mock_api_client.preview_groups.side_effect = ExternalAPIError("Cluster not found", 404)

        with pytest.raises(ExternalAPIError):
            await workflow.open()

        assert workflow.phase == WorkflowPhase.ERROR
        assert workflow.session is None
        assert workflow.last_error.message == "Cluster not found"
        assert workflow.notifications[-1].type == "error"
        assert workflow.notifications[-1].title == "Failed to load preview"

    @pytest.mark.asyncio
    async def test_retry_after_failed_open(self, workflow, mock_api_client, sample_preview):
        mock_api_client.preview_groups.side_effect = [ExternalAPIError("boom"), sample_preview]

        with pytest.raises(ExternalAPIError):
            await workflow.open()
        assert await workflow.recalculate()

        assert workflow.phase == WorkflowPhase.EDITING
        assert workflow.last_error is None

    @pytest.mark.asyncio
    async def test_close_resets(self, workflow):
        await workflow.open()

        workflow.close()

        assert workflow.phase == WorkflowPhase.IDLE
        assert workflow.session is None
        assert workflow.renderer.surface.layers == {}

    @pytest.mark.asyncio
    async def test_reopen_after_close_fetches_again(self, workflow, mock_api_client):
        await workflow.open()
        workflow.close()
        await workflow.open()

        assert mock_api_client.preview_groups.await_count == 2
        assert workflow.phase == WorkflowPhase.EDITING


# ============================================================
# Recalculation Tests
# ============================================================

class TestRecalculate:
    """Tests for re-running the preview."""

    @pytest.mark.asyncio
    async def test_recalculate_discards_edits(self, workflow):
        await workflow.open()
        workflow.rename_group(1, "Manual name")
        workflow.remove_plot(2, "p4")
        first_session_id = workflow.session.session_id

        applied = await workflow.recalculate()

        assert applied
        assert workflow.session.session_id != first_session_id
        assert workflow.session.get_group(1).group_name == "Group 1 - OM5451"
        assert workflow.session.get_group(2).plot_ids == ["p4", "p5", "p6"]
        assert workflow.session.removed_plots == []
        assert workflow.notifications[-1].message == "Recalculated groups: 2 groups with 6 plots"

    @pytest.mark.asyncio
    async def test_recalculate_uses_updated_parameters(self, workflow, mock_api_client):
        await workflow.open()

        workflow.update_parameters(strategy="precise", max_plots=20)
        await workflow.recalculate()

        sent = mock_api_client.preview_groups.await_args.args[0]
        assert sent.strategy == "precise"
        assert sent.max_plots == 20
        assert workflow.session.max_plots_per_group == 20

    @pytest.mark.asyncio
    async def test_invalid_parameters_rejected(self, workflow):
        await workflow.open()

        with pytest.raises(ValueError):
            workflow.update_parameters(min_plots=20, max_plots=10)
        with pytest.raises(ValueError, match="cluster_id"):
            workflow.update_parameters(cluster_id="other")

        assert workflow.params.max_plots == 15

    @pytest.mark.asyncio
    async def test_failed_recalculate_keeps_session(self, workflow, mock_api_client):
        await workflow.open()
        workflow.rename_group(1, "Kept")
        mock_api_client.preview_groups.side_effect = ExternalAPIError("Timeout", 502)

        with pytest.raises(ExternalAPIError):
            await workflow.recalculate()

        assert workflow.phase == WorkflowPhase.EDITING
        assert workflow.session.get_group(1).group_name == "Kept"
        assert workflow.last_error.operation == "recalculate"
        assert workflow.notifications[-1].title == "Failed to recalculate groups"
        assert workflow.notifications[-1].message == "Timeout"

    @pytest.mark.asyncio
    async def test_concurrent_recalculate_refused(self, workflow, mock_api_client, sample_preview):
        await workflow.open()
        gate = asyncio.Event()

        async def slow_preview(params):
            await gate.wait()
            return sample_preview

        mock_api_client.preview_groups.side_effect = slow_preview
        pending = asyncio.create_task(workflow.recalculate())
        await asyncio.sleep(0)

        assert workflow.phase == WorkflowPhase.RECALCULATING
        with pytest.raises(WorkflowStateError):
            await workflow.recalculate()

        gate.set()
        assert await pending

    @pytest.mark.asyncio
    async def test_stale_response_discarded(self, workflow, mock_api_client, sample_preview):
        """A response to a superseded request never replaces a newer session."""
        await workflow.open()
        gate = asyncio.Event()
        stale = renamed(sample_preview, "Stale")
        fresh = renamed(sample_preview, "Fresh")
        responses = iter([stale, fresh])

        async def preview(params):
            response = next(responses)
            if response is stale:
                await gate.wait()
            return response

        mock_api_client.preview_groups.side_effect = preview
        pending = asyncio.create_task(workflow.recalculate())
        await asyncio.sleep(0)

        workflow.close()
        await workflow.open()
        gate.set()
        applied = await pending

        assert applied is False
        assert workflow.session.get_group(1).group_name == "Fresh"
        assert workflow.phase == WorkflowPhase.EDITING

    @pytest.mark.asyncio
    async def test_stale_failure_ignored(self, workflow, mock_api_client, sample_preview):
        await workflow.open()
        gate = asyncio.Event()
        calls = []

        async def preview(params):
            calls.append(params)
            if len(calls) == 1:
                await gate.wait()
                raise ExternalAPIError("late failure")
            return sample_preview

        mock_api_client.preview_groups.side_effect = preview
        pending = asyncio.create_task(workflow.recalculate())
        await asyncio.sleep(0)

        workflow.close()
        await workflow.open()
        gate.set()

        assert await pending is False
        assert workflow.last_error is None
        assert workflow.phase == WorkflowPhase.EDITING


# ============================================================
# Edit Tests
# ============================================================

class TestEdits:
    """Tests for edits routed through the workflow."""

    @pytest.mark.asyncio
    async def test_edits_require_editing_phase(self, workflow):
        with pytest.raises(WorkflowStateError):
            workflow.rename_group(1, "x")

    @pytest.mark.asyncio
    async def test_edit_rerenders_map(self, workflow):
        await workflow.open()

        workflow.remove_plot(1, "p2")

        assert workflow.renderer.surface.get_layer("plot-fill-p2") is None

    @pytest.mark.asyncio
    async def test_highlight(self, workflow):
        await workflow.open()

        workflow.set_highlight(hovered_group=2, expanded_groups=[1])

        surface = workflow.renderer.surface
        assert surface.get_paint_property("plot-fill-p4", "fill-opacity") == 0.6
        assert surface.get_paint_property("plot-fill-p1", "fill-opacity") == 0.6
        assert workflow.expanded_groups == {1}

    @pytest.mark.asyncio
    async def test_highlight_unknown_group(self, workflow):
        await workflow.open()

        with pytest.raises(IllegalEditError, match="Unknown group"):
            workflow.set_highlight(hovered_group=9)

    @pytest.mark.asyncio
    async def test_expansion_survives_edits(self, workflow):
        await workflow.open()
        workflow.set_highlight(expanded_groups=[2])

        workflow.assign_supervisor(2, "sup-1")

        assert workflow.renderer.surface.get_paint_property("plot-fill-p5", "fill-opacity") == 0.6

    @pytest.mark.asyncio
    async def test_map_html(self, workflow):
        await workflow.open()

        html = workflow.map_html()

        assert "Ungrouped (1)" in html


# ============================================================
# Submission Tests
# ============================================================

class TestSubmit:
    """Tests for creating groups."""

    @pytest.mark.asyncio
    async def test_blocked_submission_sends_nothing(self, workflow, mock_api_client):
        await workflow.open()
        workflow.rename_group(2, "group 1 - om5451")

        with pytest.raises(SubmissionBlockedError) as exc_info:
            await workflow.submit()

        mock_api_client.form_groups_from_preview.assert_not_awaited()
        assert workflow.phase == WorkflowPhase.EDITING
        assert any(f.is_blocking for f in exc_info.value.findings)

    @pytest.mark.asyncio
    async def test_successful_submission(self, workflow, mock_api_client):
        created = []
        invalidated = []
        workflow.on_groups_created = created.append
        workflow.invalidation_listeners.append(invalidated.append)
        mock_api_client.form_groups_from_preview.return_value = FormGroupsResponse(
            groups_created=2,
            warnings=["Group 2 has no supervisor"],
        )
        await workflow.open()
        workflow.remove_plot(1, "p3")

        result = await workflow.submit()

        request = mock_api_client.form_groups_from_preview.await_args.args[0]
        assert request.groups[0].plot_ids == ["p1", "p2"]
        assert result.groups_created == 2
        assert workflow.phase == WorkflowPhase.DONE
        assert workflow.session is None
        assert created == [result]
        assert invalidated == [("cluster-current-season", "c-01"), ("groups",)]
        assert [n.message for n in workflow.notifications[-2:]] == [
            "Created 2 groups",
            "Group 2 has no supervisor",
        ]
        assert workflow.notifications[-1].type == "warning"

    @pytest.mark.asyncio
    async def test_failed_submission_returns_to_editing(self, workflow, mock_api_client):
        created = []
        workflow.on_groups_created = created.append
        mock_api_client.form_groups_from_preview.side_effect = ExternalAPIError("Plot p1 already grouped", 409)
        await workflow.open()

        with pytest.raises(ExternalAPIError):
            await workflow.submit()

        assert workflow.phase == WorkflowPhase.EDITING
        assert workflow.session is not None
        assert created == []
        assert workflow.notifications[-1].title == "Failed to create groups"

    @pytest.mark.asyncio
    async def test_submit_after_done_refused(self, workflow):
        await workflow.open()
        await workflow.submit()

        with pytest.raises(WorkflowStateError):
            await workflow.submit()


# ============================================================
# Registry Tests
# ============================================================

class TestWorkflowRegistry:
    """Tests for the dialog registry."""

    def test_create_and_get(self, mock_api_client, sample_params):
        registry = WorkflowRegistry(client_factory=lambda: mock_api_client)

        workflow = registry.create(sample_params)

        assert registry.get(workflow.dialog_id) is workflow
        assert len(registry) == 1
        assert registry.dialog_ids() == [workflow.dialog_id]

    def test_unknown_dialog(self, mock_api_client):
        registry = WorkflowRegistry(client_factory=lambda: mock_api_client)

        with pytest.raises(DialogNotFoundError):
            registry.get("missing")

    @pytest.mark.asyncio
    async def test_close_removes_dialog(self, mock_api_client, sample_params):
        registry = WorkflowRegistry(client_factory=lambda: mock_api_client)
        workflow = registry.create(sample_params)
        await workflow.open()

        registry.close(workflow.dialog_id)

        assert len(registry) == 0
        assert workflow.phase == WorkflowPhase.IDLE

    @pytest.mark.asyncio
    async def test_invalidation_recorded(self, mock_api_client, sample_params):
        registry = WorkflowRegistry(client_factory=lambda: mock_api_client)
        seen = []
        registry.subscribe(seen.append)
        workflow = registry.create(sample_params)
        await workflow.open()

        await workflow.submit()

        assert registry.invalidated_keys == [("cluster-current-season", "c-01"), ("groups",)]
        assert seen == registry.invalidated_keys


# ============================================================
# Malformed Upstream Reply Tests
# ============================================================

GROUPING_URL = "https://grouping.test/api"


def gateway_page() -> httpx.Response:
    return httpx.Response(200, text="<html>gateway</html>")


@pytest.fixture
async def live_workflow(monkeypatch, sample_params):
    """Workflow backed by a real client whose traffic is mocked with respx."""
    monkeypatch.setattr(GroupingServiceClient._send.retry, "wait", wait_none())
    client = GroupingServiceClient(base_url=GROUPING_URL, api_key="")
    yield GroupFormationWorkflow(client=client, params=sample_params)
    await client.close()


class TestMalformedReplies:
    """A reply the client cannot decode must leave the dialog usable."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_recalculate_with_html_reply(self, live_workflow, sample_preview):
        respx.get(f"{GROUPING_URL}/Group/preview").mock(side_effect=[
            httpx.Response(200, json={"succeeded": True, "data": sample_preview.to_wire()}),
            gateway_page(),
        ])
        await live_workflow.open()
        live_workflow.rename_group(1, "Kept")

        with pytest.raises(ExternalAPIError, match="Malformed response"):
            await live_workflow.recalculate()

        assert live_workflow.phase == WorkflowPhase.EDITING
        assert not live_workflow.is_pending
        assert live_workflow.session.get_group(1).group_name == "Kept"
        assert live_workflow.last_error.operation == "recalculate"
        assert live_workflow.notifications[-1].title == "Failed to recalculate groups"
        live_workflow.rename_group(1, "Still editable")

    @pytest.mark.asyncio
    @respx.mock
    async def test_open_with_html_reply(self, live_workflow):
        respx.get(f"{GROUPING_URL}/Group/preview").mock(return_value=gateway_page())

        with pytest.raises(ExternalAPIError):
            await live_workflow.open()

        assert live_workflow.phase == WorkflowPhase.ERROR
        assert live_workflow.notifications[-1].title == "Failed to load preview"

    @pytest.mark.asyncio
    @respx.mock
    async def test_submit_with_html_reply(self, live_workflow, sample_preview):
        respx.get(f"{GROUPING_URL}/Group/preview").mock(
            return_value=httpx.Response(200, json=sample_preview.to_wire())
        )
        respx.post(f"{GROUPING_URL}/Group/form-from-preview").mock(return_value=gateway_page())
        await live_workflow.open()

        with pytest.raises(ExternalAPIError, match="Malformed response"):
            await live_workflow.submit()

        assert live_workflow.phase == WorkflowPhase.EDITING
        assert live_workflow.session is not None
        assert live_workflow.last_error.operation == "submit"
        assert live_workflow.notifications[-1].title == "Failed to create groups"

    @pytest.mark.asyncio
    @respx.mock
    async def test_submit_with_list_reply(self, live_workflow, sample_preview):
        respx.get(f"{GROUPING_URL}/Group/preview").mock(
            return_value=httpx.Response(200, json=sample_preview.to_wire())
        )
        respx.post(f"{GROUPING_URL}/Group/form-from-preview").mock(
            return_value=httpx.Response(200, json=[])
        )
        await live_workflow.open()

        with pytest.raises(ExternalAPIError, match="Malformed creation response"):
            await live_workflow.submit()

        assert live_workflow.phase == WorkflowPhase.EDITING

    @pytest.mark.asyncio
    async def test_unexpected_recalculate_error_restores_phase(self, workflow, mock_api_client):
        await workflow.open()
        mock_api_client.preview_groups.side_effect = RuntimeError("decoder exploded")

        with pytest.raises(RuntimeError):
            await workflow.recalculate()

        assert workflow.phase == WorkflowPhase.EDITING
        assert not workflow.is_pending
        assert workflow.last_error.message == "Unexpected error: decoder exploded"
        assert workflow.notifications[-1].type == "error"

    @pytest.mark.asyncio
    async def test_unexpected_submit_error_restores_phase(self, workflow, mock_api_client):
        await workflow.open()
        mock_api_client.form_groups_from_preview.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await workflow.submit()

        assert workflow.phase == WorkflowPhase.EDITING
        assert workflow.last_error.operation == "submit"
        assert workflow.notifications[-1].title == "Failed to create groups"
