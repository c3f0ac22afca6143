"""
Domain models for group formation previews.

These models represent the core domain entities and should be independent
of any infrastructure concerns (API clients, map surfaces, etc.).

The grouping service speaks camelCase JSON, so every model accepts both the
wire name (``plotId``) and the Python attribute name (``plot_id``).
"""
from datetime import date
from typing import Any, List, Literal, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model with camelCase aliases."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys, JSON-compatible values."""
        return self.model_dump(mode="json", by_alias=True)


class Geometry(BaseModel):
    """
    Normalized boundary geometry.

    Coordinates follow GeoJSON nesting: a Point holds ``[lng, lat]``,
    a Polygon holds a list of rings, each a list of ``[lng, lat]`` pairs.
    """
    type: Literal["Point", "Polygon"]
    coordinates: list

    @property
    def outer_ring(self) -> list[list[float]]:
        """Outer ring vertices; a point yields a single-vertex ring."""
        if self.type == "Point":
            return [list(self.coordinates)]
        return [list(pair) for pair in self.coordinates[0]] if self.coordinates else []

    def to_geojson(self) -> dict[str, Any]:
        return {"type": self.type, "coordinates": self.coordinates}


class Plot(CamelModel):
    """A farmed land parcel. Immutable once fetched."""
    model_config = ConfigDict(frozen=True)

    plot_id: str
    farmer_id: Optional[str] = None
    farmer_name: str = ""
    farmer_phone: Optional[str] = None
    area: float = Field(gt=0, description="Plot area in hectares")
    planting_date: Optional[date] = None
    rice_variety_id: Optional[str] = None
    rice_variety_name: Optional[str] = None
    boundary_wkt: Optional[str] = None
    boundary_geo_json: Optional[Any] = Field(
        default=None,
        description="GeoJSON geometry, string-encoded or parsed",
    )
    coordinate: Optional[Any] = Field(
        default=None,
        description="Point fallback when no boundary is known",
    )
    so_thua: Optional[str] = Field(default=None, description="Cadastral parcel number")
    so_to: Optional[str] = Field(default=None, description="Cadastral map sheet number")


class NearbyGroup(CamelModel):
    """A candidate group for an ungrouped plot, ranked by distance."""
    group_id: Optional[str] = None
    group_number: int
    distance: float = Field(description="Distance in meters")


class UngroupedPlot(Plot):
    """A plot the grouping algorithm could not place."""
    ungroup_reason: str = ""
    reason_description: str = ""
    distance_to_nearest_group: Optional[float] = None
    nearest_group_number: Optional[int] = None
    suggestions: List[str] = Field(default_factory=list)
    nearby_groups: List[NearbyGroup] = Field(default_factory=list)

    def as_plot(self) -> Plot:
        """Strip the ungrouping annotations."""
        return Plot.model_validate(
            self.model_dump(include=set(Plot.model_fields))
        )


class SupervisorForAssignment(CamelModel):
    """A supervisor that can be assigned to a group."""
    supervisor_id: str
    full_name: str
    phone_number: Optional[str] = None
    is_available: bool = True
    unavailable_reason: Optional[str] = None
    current_group_count: int = 0
    current_total_area: float = 0.0
    max_area_capacity: Optional[float] = None
    remaining_area_capacity: Optional[float] = None

    @model_validator(mode="after")
    def _derive_remaining_capacity(self) -> "SupervisorForAssignment":
        if self.remaining_area_capacity is None and self.max_area_capacity is not None:
            self.remaining_area_capacity = self.max_area_capacity - self.current_total_area
        if self.is_available:
            self.unavailable_reason = None
        return self


class PreviewGroup(CamelModel):
    """A proposed work group."""
    group_number: int
    group_name: str = ""
    rice_variety_id: Optional[str] = None
    rice_variety_name: str = ""
    planting_window_start: Optional[date] = None
    planting_window_end: Optional[date] = None
    median_planting_date: Optional[date] = None
    supervisor_id: Optional[str] = None
    supervisor_name: Optional[str] = None
    plot_ids: List[str] = Field(default_factory=list)
    plots: List[Plot] = Field(default_factory=list)
    plot_count: int = 0
    total_area: float = 0.0
    centroid_lat: Optional[float] = None
    centroid_lng: Optional[float] = None
    group_boundary_geo_json: Optional[Any] = None


class PreviewSummary(CamelModel):
    """Counts reported by the grouping service."""
    groups_to_be_formed: int = 0
    plots_grouped: int = 0
    ungrouped_plots: int = 0


FormationStrategy = Literal["quick", "balanced", "precise"]


class GroupFormationParams(CamelModel):
    """Parameters sent to the grouping service."""
    cluster_id: str
    season_id: str
    year: int
    strategy: FormationStrategy = "balanced"
    proximity_threshold_meters: int = Field(default=2000, ge=10, le=5000)
    planting_date_tolerance_days: int = Field(default=2, ge=0, le=14)
    min_group_area_ha: float = Field(default=15, ge=0)
    max_group_area_ha: float = Field(default=50, ge=0)
    min_plots: int = Field(default=5, ge=1)
    max_plots: int = Field(default=15, ge=1)
    auto_assign_supervisors: bool = True

    @model_validator(mode="after")
    def _check_ranges(self) -> "GroupFormationParams":
        if self.max_group_area_ha < self.min_group_area_ha:
            raise ValueError("maxGroupAreaHa must not be below minGroupAreaHa")
        if self.max_plots < self.min_plots:
            raise ValueError("maxPlots must not be below minPlots")
        return self

    def to_query_params(self) -> dict[str, str]:
        """Query-string form expected by the preview endpoint."""
        params = {}
        for key, value in self.to_wire().items():
            params[key] = str(value).lower() if isinstance(value, bool) else str(value)
        return params


class PreviewGroupsResponse(CamelModel):
    """Preview payload returned by the grouping service."""
    cluster_id: str
    season_id: str
    year: int
    proposed_groups: List[PreviewGroup] = Field(
        default_factory=list,
        validation_alias=AliasChoices("proposedGroups", "previewGroups", "proposed_groups"),
    )
    available_supervisors: List[SupervisorForAssignment] = Field(default_factory=list)
    ungrouped_plots: List[UngroupedPlot] = Field(default_factory=list)
    summary: PreviewSummary = Field(default_factory=PreviewSummary)


class GroupSubmission(CamelModel):
    """One confirmed group inside a creation request."""
    group_name: str
    rice_variety_id: Optional[str] = None
    planting_window_start: Optional[date] = None
    planting_window_end: Optional[date] = None
    median_planting_date: Optional[date] = None
    plot_ids: List[str]
    supervisor_id: Optional[str] = None


class FormGroupsFromPreviewRequest(CamelModel):
    """Creation request built from the edited preview."""
    cluster_id: str
    season_id: str
    year: int
    create_groups_immediately: bool = True
    groups: List[GroupSubmission]


class FormGroupsResponse(CamelModel):
    """Result of a group creation request."""
    groups_created: int = 0
    warnings: List[str] = Field(default_factory=list)
