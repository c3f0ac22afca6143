"""
Integration tests for API endpoints.

Tests the full HTTP request/response cycle with mocked external dependencies.
"""
import pytest

from app.main import app
from app.api.dependencies import get_workflow_registry
from app.infrastructure.external_api_client import ExternalAPIError
from app.services.application.group_formation_service import WorkflowRegistry

DIALOGS = "/api/v1/group-formation/dialogs"

OPEN_BODY = {
    "clusterId": "c-01",
    "seasonId": "s-2025-ws",
    "year": 2025,
    "strategy": "balanced",
}


@pytest.fixture
def registry(mock_api_client):
    """Registry wired to the mock client for the duration of a test."""
    registry = WorkflowRegistry(client_factory=lambda: mock_api_client)
    app.dependency_overrides[get_workflow_registry] = lambda: registry
    try:
        yield registry
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def dialog_id(test_client, registry) -> str:
    response = test_client.post(DIALOGS, json=OPEN_BODY)
    assert response.status_code == 201
    return response.json()["dialogId"]


# ============================================================
# Health Check Tests
# ============================================================

class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_root_endpoint(self, test_client):
        """Root endpoint should return healthy status."""
        response = test_client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "service" in data
        assert "version" in data

    def test_health_endpoint(self, test_client):
        """Health endpoint should return healthy status."""
        response = test_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["openDialogs"] >= 0


# ============================================================
# Dialog Lifecycle Tests
# ============================================================

class TestDialogLifecycle:
    """Tests for opening, reading and closing dialogs."""

    def test_open_dialog(self, test_client, registry, mock_api_client):
        """Opening a dialog fetches the preview and returns camelCase state."""
        response = test_client.post(DIALOGS, json=OPEN_BODY)

        assert response.status_code == 201
        data = response.json()
        assert data["phase"] == "editing"
        assert data["params"]["clusterId"] == "c-01"
        assert [g["groupNumber"] for g in data["groups"]] == [1, 2]
        assert data["groups"][0]["plotIds"] == ["p1", "p2", "p3"]
        assert data["ungroupedPlots"][0]["plotId"] == "u1"
        assert data["validation"]["hasBlockingErrors"] is False
        assert data["notifications"][-1]["title"] == "Preview ready"
        mock_api_client.preview_groups.assert_awaited_once()

    def test_open_dialog_invalid_params(self, test_client, registry):
        """Out-of-range parameters are rejected before any request is sent."""
        response = test_client.post(DIALOGS, json={**OPEN_BODY, "minPlots": 10, "maxPlots": 5})

        assert response.status_code == 422

    def test_open_dialog_preview_failure(self, test_client, registry, mock_api_client):
        """A failed preview still opens the dialog, in the error phase."""
        mock_api_client.preview_groups.side_effect = ExternalAPIError("Cluster has no plots", 400)

        response = test_client.post(DIALOGS, json=OPEN_BODY)

        assert response.status_code == 201
        data = response.json()
        assert data["phase"] == "error"
        assert data["lastError"]["message"] == "Cluster has no plots"
        assert data["groups"] == []

    def test_get_dialog(self, test_client, dialog_id):
        response = test_client.get(f"{DIALOGS}/{dialog_id}")

        assert response.status_code == 200
        assert response.json()["dialogId"] == dialog_id

    def test_unknown_dialog(self, test_client, registry):
        """Unknown dialog ids return 404."""
        response = test_client.get(f"{DIALOGS}/missing")

        assert response.status_code == 404
        assert "missing" in response.json()["detail"]

    def test_close_dialog(self, test_client, dialog_id, registry):
        response = test_client.delete(f"{DIALOGS}/{dialog_id}")

        assert response.status_code == 204
        assert len(registry) == 0
        assert test_client.get(f"{DIALOGS}/{dialog_id}").status_code == 404


# ============================================================
# Parameter and Recalculation Tests
# ============================================================

class TestRecalculation:
    """Tests for parameter updates and recalculation."""

    def test_update_parameters(self, test_client, dialog_id):
        response = test_client.patch(
            f"{DIALOGS}/{dialog_id}/parameters",
            json={"strategy": "quick", "proximityThresholdMeters": 500},
        )

        assert response.status_code == 200
        assert response.json()["strategy"] == "quick"
        assert response.json()["proximityThresholdMeters"] == 500

    def test_update_parameters_out_of_range(self, test_client, dialog_id):
        response = test_client.patch(
            f"{DIALOGS}/{dialog_id}/parameters",
            json={"minPlots": 30},
        )

        assert response.status_code == 400

    def test_recalculate_discards_edits(self, test_client, dialog_id):
        test_client.patch(f"{DIALOGS}/{dialog_id}/groups/1", json={"groupName": "Manual"})

        response = test_client.post(f"{DIALOGS}/{dialog_id}/recalculate")

        assert response.status_code == 200
        assert response.json()["groups"][0]["groupName"] == "Group 1 - OM5451"

    def test_recalculate_upstream_failure(self, test_client, dialog_id, mock_api_client):
        """Grouping service failures map to 502 and the preview is kept."""
        mock_api_client.preview_groups.side_effect = ExternalAPIError("Service unavailable", 502)

        response = test_client.post(f"{DIALOGS}/{dialog_id}/recalculate")

        assert response.status_code == 502
        assert response.json()["detail"] == "Service unavailable"
        state = test_client.get(f"{DIALOGS}/{dialog_id}").json()
        assert state["phase"] == "editing"
        assert len(state["groups"]) == 2
        assert state["lastError"]["operation"] == "recalculate"


# ============================================================
# Edit Endpoint Tests
# ============================================================

class TestEditEndpoints:
    """Tests for group and plot edits."""

    def test_rename_group(self, test_client, dialog_id):
        response = test_client.patch(
            f"{DIALOGS}/{dialog_id}/groups/1",
            json={"groupName": "  North  "},
        )

        assert response.status_code == 200
        assert response.json()["groupName"] == "North"

    def test_blank_rename_rejected(self, test_client, dialog_id):
        response = test_client.patch(
            f"{DIALOGS}/{dialog_id}/groups/1",
            json={"groupName": "  "},
        )

        assert response.status_code == 400
        assert "cannot be empty" in response.json()["detail"]

    def test_unknown_group(self, test_client, dialog_id):
        response = test_client.patch(
            f"{DIALOGS}/{dialog_id}/groups/9",
            json={"groupName": "x"},
        )

        assert response.status_code == 404

    def test_assign_supervisor(self, test_client, dialog_id):
        response = test_client.put(
            f"{DIALOGS}/{dialog_id}/groups/2/supervisor",
            json={"supervisorId": "sup-1"},
        )

        assert response.status_code == 200
        assert response.json()["supervisorName"] == "Nguyen Van A"

    def test_remove_and_add_plot(self, test_client, dialog_id):
        removed = test_client.delete(f"{DIALOGS}/{dialog_id}/groups/1/plots/p2")

        assert removed.status_code == 200
        assert [p["plotId"] for p in removed.json()["removedPlots"]] == ["p2"]

        added = test_client.post(
            f"{DIALOGS}/{dialog_id}/groups/2/plots",
            json={"plotId": "p2"},
        )

        assert added.status_code == 200
        data = added.json()
        assert data["groups"][1]["plotIds"] == ["p4", "p5", "p6", "p2"]
        assert data["removedPlots"] == []
        assert data["revision"] == 2

    def test_remove_last_plot_rejected(self, test_client, dialog_id):
        for plot_id in ("p1", "p2"):
            test_client.delete(f"{DIALOGS}/{dialog_id}/groups/1/plots/{plot_id}")

        response = test_client.delete(f"{DIALOGS}/{dialog_id}/groups/1/plots/p3")

        assert response.status_code == 400
        assert "last plot" in response.json()["detail"]

    def test_add_plot_from_other_group_rejected(self, test_client, dialog_id):
        response = test_client.post(
            f"{DIALOGS}/{dialog_id}/groups/2/plots",
            json={"plotId": "p1"},
        )

        assert response.status_code == 400
        assert "Group 1" in response.json()["detail"]

    def test_suggestions(self, test_client, dialog_id):
        response = test_client.get(f"{DIALOGS}/{dialog_id}/plots/u1/suggestions?limit=1")

        assert response.status_code == 200
        data = response.json()
        assert data["plotId"] == "u1"
        assert [s["groupNumber"] for s in data["suggestions"]] == [1]

    def test_supervisor_workloads(self, test_client, dialog_id):
        response = test_client.get(f"{DIALOGS}/{dialog_id}/supervisors/workloads")

        assert response.status_code == 200
        workloads = {w["supervisorId"]: w for w in response.json()}
        assert workloads["sup-1"]["assignedGroupNumbers"] == [1]
        assert workloads["sup-1"]["overCapacity"] is False


# ============================================================
# Validation and Map Tests
# ============================================================

class TestValidationAndMap:
    """Tests for validation findings and map output."""

    def test_validation(self, test_client, dialog_id):
        response = test_client.get(f"{DIALOGS}/{dialog_id}/validation")

        assert response.status_code == 200
        data = response.json()
        assert data["hasBlockingErrors"] is False
        assert data["findings"][0]["severity"] == "warning"

    def test_map_state(self, test_client, dialog_id):
        response = test_client.get(f"{DIALOGS}/{dialog_id}/map")

        assert response.status_code == 200
        data = response.json()
        layer_ids = [layer["id"] for layer in data["layers"]]
        assert "plot-fill-p1" in layer_ids
        assert any(m["markerId"] == "ungrouped-marker-u1" for m in data["markers"])
        assert [entry["label"] for entry in data["legend"]] == ["OM5451", "OM5451", "Ungrouped"]
        assert data["camera"]["kind"] == "fit_bounds"

    def test_map_html(self, test_client, dialog_id):
        response = test_client.get(f"{DIALOGS}/{dialog_id}/map.html")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "leaflet" in response.text.lower()

    def test_highlight(self, test_client, dialog_id):
        response = test_client.put(
            f"{DIALOGS}/{dialog_id}/highlight",
            json={"hoveredGroup": 2, "expandedGroups": []},
        )

        assert response.status_code == 200
        layers = {layer["id"]: layer for layer in response.json()["layers"]}
        assert layers["plot-fill-p4"]["paint"]["fill-opacity"] == 0.6
        assert layers["plot-fill-p1"]["paint"]["fill-opacity"] == 0.4


# ============================================================
# Submission Tests
# ============================================================

class TestSubmission:
    """Tests for creating groups."""

    def test_submit(self, test_client, dialog_id, registry, mock_api_client):
        response = test_client.post(f"{DIALOGS}/{dialog_id}/submit")

        assert response.status_code == 200
        data = response.json()
        assert data["groupsCreated"] == 2
        assert data["notifications"][-1]["message"] == "Created 2 groups"
        assert registry.invalidated_keys == [("cluster-current-season", "c-01"), ("groups",)]
        state = test_client.get(f"{DIALOGS}/{dialog_id}").json()
        assert state["phase"] == "done"

    def test_blocked_submit(self, test_client, dialog_id, mock_api_client):
        """Duplicate names block submission with 409 and no request is sent."""
        test_client.patch(
            f"{DIALOGS}/{dialog_id}/groups/2",
            json={"groupName": "GROUP 1 - OM5451"},
        )

        response = test_client.post(f"{DIALOGS}/{dialog_id}/submit")

        assert response.status_code == 409
        assert any(f["severity"] == "error" for f in response.json()["findings"])
        mock_api_client.form_groups_from_preview.assert_not_awaited()

    def test_submit_twice_conflicts(self, test_client, dialog_id):
        test_client.post(f"{DIALOGS}/{dialog_id}/submit")

        response = test_client.post(f"{DIALOGS}/{dialog_id}/submit")

        assert response.status_code == 409
