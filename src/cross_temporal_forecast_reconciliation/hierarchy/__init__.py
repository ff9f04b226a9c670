"""Cross-sectional and temporal hierarchy descriptors."""

from .cross_sectional import HierarchyDescriptor
from .temporal import TemporalHierarchyDescriptor, divisors

__all__ = [
    "HierarchyDescriptor",
    "TemporalHierarchyDescriptor",
    "divisors",
]
