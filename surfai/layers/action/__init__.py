"""Action Layer - Resilient interaction components."""

from surfai.layers.action.highlighter import ElementHighlight
from surfai.layers.action.interaction import Action, InteractionEngine, InteractionResult

__all__ = ["Action", "ElementHighlight", "InteractionEngine", "InteractionResult"]
