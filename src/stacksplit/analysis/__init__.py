"""Changeset analysis: classification and intra-changeset import edges."""

from .analyzer import ChangeAnalysis, ChangeAnalyzer
from .graph import DependencyGraph
from .imports import ImportExtractor
from .rules import ClassificationRule, ClassificationRules

__all__ = [
    "ChangeAnalysis",
    "ChangeAnalyzer",
    "ClassificationRule",
    "ClassificationRules",
    "DependencyGraph",
    "ImportExtractor",
]
