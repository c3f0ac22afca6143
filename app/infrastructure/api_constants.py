"""
API endpoint constants and configuration.

This module contains the grouping service endpoint paths and related constants.
Centralizing these values makes it easy to swap out endpoints or update API versions.
"""


# Grouping Service Endpoints
class GroupingAPIEndpoints:
    """Grouping service endpoint paths."""

    # Base paths
    GROUP_BASE = "/Group"

    # Preview and creation
    PREVIEW = f"{GROUP_BASE}/preview"
    FORM_FROM_PREVIEW = f"{GROUP_BASE}/form-from-preview"


# Cache keys invalidated after groups are created
class InvalidationKeys:
    """Keys of cached queries that become stale once groups exist."""

    CLUSTER_CURRENT_SEASON = "cluster-current-season"
    GROUPS = "groups"

    @classmethod
    def after_groups_created(cls, cluster_id: str) -> list[tuple[str, ...]]:
        """
        Keys to invalidate after groups were created for a cluster.

        Args:
            cluster_id: Cluster the groups belong to

        Returns:
            List of cache key tuples
        """
        return [(cls.CLUSTER_CURRENT_SEASON, cluster_id), (cls.GROUPS,)]


# API Configuration Constants
class APIConstants:
    """General API configuration constants."""

    # HTTP Headers
    CONTENT_TYPE_JSON = "application/json"

    # Result<T> wrapper keys
    RESULT_SUCCEEDED = "succeeded"
    RESULT_DATA = "data"
    RESULT_MESSAGE = "message"
    RESULT_ERRORS = "errors"
