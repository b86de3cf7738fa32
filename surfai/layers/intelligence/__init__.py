"""Intelligence Layer - Heuristic element classification."""

from surfai.layers.intelligence.element_classifier import ElementClassifier, ElementDescriptor, ElementRole

__all__ = ["ElementClassifier", "ElementDescriptor", "ElementRole"]
