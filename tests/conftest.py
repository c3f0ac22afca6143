"""
Shared pytest fixtures for all tests.

This module provides common fixtures including:
- Plot and group factories
- A sample preview response
- Mock grouping service client
- FastAPI test client
"""
import pytest
from datetime import date
from typing import Callable, Optional
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

from app.main import app
from app.domain.models import (
    FormGroupsResponse,
    GroupFormationParams,
    Plot,
    PreviewGroup,
    PreviewGroupsResponse,
    PreviewSummary,
    SupervisorForAssignment,
    UngroupedPlot,
)
from app.infrastructure.external_api_client import GroupingServiceClient


def square_wkt(lng: float, lat: float, size: float = 0.002) -> str:
    """WKT square with its south-west corner at (lng, lat)."""
    return (
        f"POLYGON(({lng} {lat}, {lng + size} {lat}, {lng + size} {lat + size}, "
        f"{lng} {lat + size}, {lng} {lat}))"
    )


# ============================================================
# Factory Fixtures
# ============================================================

@pytest.fixture
def make_plot() -> Callable[..., Plot]:
    """Factory for plots with a square WKT boundary."""
    def _make(
        plot_id: str,
        lng: Optional[float] = 106.60,
        lat: Optional[float] = 10.80,
        area: float = 2.5,
        **fields,
    ) -> Plot:
        if lng is not None and lat is not None:
            fields.setdefault("boundary_wkt", square_wkt(lng, lat))
        return Plot(
            plot_id=plot_id,
            farmer_id=f"f-{plot_id}",
            farmer_name=f"Farmer {plot_id}",
            area=area,
            planting_date=date(2025, 1, 10),
            rice_variety_id="v-om5451",
            rice_variety_name="OM5451",
            **fields,
        )
    return _make


@pytest.fixture
def make_group() -> Callable[..., PreviewGroup]:
    """Factory for groups whose derived fields match their plots."""
    def _make(group_number: int, plots: list[Plot], **fields) -> PreviewGroup:
        fields.setdefault("group_name", f"Group {group_number} - OM5451")
        fields.setdefault("rice_variety_id", "v-om5451")
        fields.setdefault("rice_variety_name", "OM5451")
        return PreviewGroup(
            group_number=group_number,
            plot_ids=[p.plot_id for p in plots],
            plots=plots,
            plot_count=len(plots),
            total_area=sum(p.area for p in plots),
            **fields,
        )
    return _make


# ============================================================
# Sample Data Fixtures
# ============================================================

@pytest.fixture
def sample_supervisors() -> list[SupervisorForAssignment]:
    return [
        SupervisorForAssignment(
            supervisor_id="sup-1",
            full_name="Nguyen Van A",
            is_available=True,
            current_group_count=2,
            current_total_area=20.0,
            max_area_capacity=100.0,
        ),
        SupervisorForAssignment(
            supervisor_id="sup-2",
            full_name="Tran Thi B",
            is_available=False,
            unavailable_reason="On leave",
            current_total_area=0.0,
        ),
    ]


@pytest.fixture
def sample_ungrouped(make_plot) -> UngroupedPlot:
    base = make_plot("u1", 106.65, 10.82, area=1.2)
    return UngroupedPlot(
        **base.model_dump(),
        ungroup_reason="TooFarFromGroups",
        reason_description="Plot is 3.2 km from the nearest group",
        distance_to_nearest_group=3200.0,
        nearest_group_number=1,
        suggestions=["Consider adding to Group 1"],
    )


@pytest.fixture
def sample_preview(make_plot, make_group, sample_supervisors, sample_ungrouped) -> PreviewGroupsResponse:
    """Two groups of three plots each plus one ungrouped plot."""
    group1 = make_group(
        1,
        [
            make_plot("p1", 106.600, 10.800, so_thua="12", so_to="4"),
            make_plot("p2", 106.603, 10.800),
            make_plot("p3", 106.606, 10.800),
        ],
        supervisor_id="sup-1",
        supervisor_name="Nguyen Van A",
    )
    group2 = make_group(
        2,
        [
            make_plot("p4", 106.700, 10.850),
            make_plot("p5", 106.703, 10.850),
            make_plot("p6", 106.706, 10.850),
        ],
    )
    return PreviewGroupsResponse(
        cluster_id="c-01",
        season_id="s-2025-ws",
        year=2025,
        proposed_groups=[group1, group2],
        available_supervisors=sample_supervisors,
        ungrouped_plots=[sample_ungrouped],
        summary=PreviewSummary(groups_to_be_formed=2, plots_grouped=6, ungrouped_plots=1),
    )


@pytest.fixture
def sample_params() -> GroupFormationParams:
    return GroupFormationParams(cluster_id="c-01", season_id="s-2025-ws", year=2025)


# ============================================================
# Mock API Client Fixtures
# ============================================================

@pytest.fixture
def mock_api_client(sample_preview):
    """Create a mock grouping service client."""
    mock_client = AsyncMock(spec=GroupingServiceClient)
    mock_client.preview_groups.return_value = sample_preview
    mock_client.form_groups_from_preview.return_value = FormGroupsResponse(
        groups_created=2,
        warnings=[],
    )
    return mock_client


# ============================================================
# FastAPI Test Client Fixtures
# ============================================================

@pytest.fixture
def test_client() -> TestClient:
    """Create a synchronous test client for FastAPI."""
    return TestClient(app)
