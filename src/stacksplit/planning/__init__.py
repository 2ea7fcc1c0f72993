"""Stack planning: ordered partitions and constrained re-planning."""

from .planner import PartitionPlanner, ReplanResult, TAG_TITLES, verify_plan

__all__ = ["PartitionPlanner", "ReplanResult", "TAG_TITLES", "verify_plan"]
