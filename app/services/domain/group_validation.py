"""
Domain service: validation rules for proposed groups.

All functions here are pure. They never mutate the groups they inspect and
never raise for rule violations; violations are reported as typed results.
"""
from collections import Counter
from dataclasses import dataclass
from typing import Literal, Optional, Sequence
import logging

from app.config import settings
from app.domain.models import PreviewGroup

logger = logging.getLogger(__name__)

Severity = Literal["error", "warning"]


@dataclass(frozen=True)
class ValidationFinding:
    """A single validation result for a set of groups."""
    severity: Severity
    message: str
    group_number: Optional[int] = None

    @property
    def is_blocking(self) -> bool:
        return self.severity == "error"


@dataclass(frozen=True)
class EditCheck:
    """Outcome of a single-item edit check."""
    ok: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True)
class ValidationRules:
    """Thresholds for the warning rules."""

    min_viable_plots: int = 3
    """Groups with 1..min_viable_plots-1 plots are flagged as undersized"""

    min_group_area_ha: float = 5.0
    """Groups with a positive area below this are flagged as undersized"""

    @classmethod
    def from_settings(cls) -> "ValidationRules":
        return cls(
            min_viable_plots=settings.min_viable_plots,
            min_group_area_ha=settings.min_group_area_ha,
        )


def validate_groups(
    groups: Sequence[PreviewGroup],
    rules: Optional[ValidationRules] = None,
) -> list[ValidationFinding]:
    """
    Validate proposed groups before they are submitted.

    Rules run in a fixed order; the order only affects message ordering.

    Args:
        groups: Groups to validate
        rules: Warning thresholds (defaults from settings)

    Returns:
        List of findings, errors and warnings interleaved in rule order
    """
    rules = rules or ValidationRules.from_settings()
    findings: list[ValidationFinding] = []

    # 1. Empty groups
    for group in groups:
        if not group.plot_ids:
            findings.append(ValidationFinding(
                severity="error",
                message=f"Group {group.group_number} ({group.rice_variety_name}) has no plots",
                group_number=group.group_number,
            ))

    # 2. Plots assigned to more than one group
    plot_counts = Counter(plot_id for group in groups for plot_id in group.plot_ids)
    duplicated_plots = [plot_id for plot_id, count in plot_counts.items() if count > 1]
    if duplicated_plots:
        findings.append(ValidationFinding(
            severity="error",
            message=f"{len(duplicated_plots)} plot(s) are assigned to multiple groups",
        ))

    # 3. Groups without a supervisor
    no_supervisor = [g for g in groups if not g.supervisor_id]
    if no_supervisor:
        findings.append(ValidationFinding(
            severity="warning",
            message=f"{len(no_supervisor)} group(s) have no supervisor assigned",
        ))

    # 4. Blank names
    blank_names = [g for g in groups if not g.group_name or not g.group_name.strip()]
    if blank_names:
        findings.append(ValidationFinding(
            severity="error",
            message=f"{len(blank_names)} group(s) have no name",
        ))

    # 5. Duplicate names; blanks are already reported above
    name_counts = Counter(
        g.group_name.strip().lower() for g in groups if g.group_name and g.group_name.strip()
    )
    duplicate_names = [name for name, count in name_counts.items() if count > 1]
    if duplicate_names:
        findings.append(ValidationFinding(
            severity="error",
            message=f"Duplicate group names found: {', '.join(duplicate_names)}",
        ))

    # 6. Undersized groups
    small_groups = [g for g in groups if 0 < len(g.plot_ids) < rules.min_viable_plots]
    if small_groups:
        findings.append(ValidationFinding(
            severity="warning",
            message=f"{len(small_groups)} group(s) have fewer than {rules.min_viable_plots} plots",
        ))

    # 7. Undersized area
    small_area = [g for g in groups if 0 < g.total_area < rules.min_group_area_ha]
    if small_area:
        findings.append(ValidationFinding(
            severity="warning",
            message=f"{len(small_area)} group(s) have less than {rules.min_group_area_ha:g} ha total area",
        ))

    logger.debug(f"Validated {len(groups)} groups: {len(findings)} findings")
    return findings


def has_blocking_errors(findings: Sequence[ValidationFinding]) -> bool:
    """True iff at least one finding is an error (as opposed to a warning)."""
    return any(f.is_blocking for f in findings)


def validate_group_edit(group: PreviewGroup) -> Optional[str]:
    """
    Sanity check for a single edited group.

    Returns:
        Reason string if the group is not acceptable, otherwise None
    """
    if not group.group_name or not group.group_name.strip():
        return "Group name cannot be empty"
    if not group.plot_ids:
        return "Group must have at least one plot"
    if group.total_area <= 0:
        return "Group must have a positive total area"
    return None


def can_remove_plot(group: PreviewGroup, plot_id: str) -> EditCheck:
    """
    Check whether a plot may be removed from a group.

    A group is never emptied by plot removal.
    """
    if len(group.plot_ids) <= 1:
        return EditCheck(ok=False, reason="Cannot remove the last plot from a group")
    if plot_id not in group.plot_ids:
        return EditCheck(ok=False, reason="Plot is not in this group")
    return EditCheck(ok=True)


def can_add_plot(
    group: PreviewGroup,
    plot_id: str,
    all_groups: Sequence[PreviewGroup],
    max_plots_per_group: Optional[int] = None,
) -> EditCheck:
    """
    Check whether a plot may be added to a group.

    Args:
        group: Target group
        plot_id: Plot to add
        all_groups: Every group in the preview, used to detect cross-group membership
        max_plots_per_group: Optional cap on the group's plot count
    """
    if plot_id in group.plot_ids:
        return EditCheck(ok=False, reason="Plot is already in this group")

    other = next(
        (g for g in all_groups if g.group_number != group.group_number and plot_id in g.plot_ids),
        None,
    )
    if other is not None:
        return EditCheck(ok=False, reason=f"Plot is already in Group {other.group_number}")

    if max_plots_per_group and len(group.plot_ids) >= max_plots_per_group:
        return EditCheck(
            ok=False,
            reason=f"Group has reached maximum of {max_plots_per_group} plots",
        )

    return EditCheck(ok=True)
