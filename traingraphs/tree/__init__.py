"""Phonetic context-dependency trees."""

from .context_dependency import ContextDependency
from .event_map import (
    PDF_CLASS_KEY,
    ConstantEventMap,
    EventMap,
    SplitEventMap,
    TableEventMap,
    event_map_from_dict,
)
