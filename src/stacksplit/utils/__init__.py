"""Small shared helpers."""

from .slug import branch_name, partition_name, slugify

__all__ = ["branch_name", "partition_name", "slugify"]
