from __future__ import annotations

from crmforms.core.cascade import (
    AutoFillHint,
    CascadingSelectionGraph,
    DerivedFieldRule,
    DerivedFieldState,
)
from crmforms.core.debounce import DebounceScheduler
from crmforms.core.geography import GeographyIndex, GeographyNode, LocationInfo, load_geography_index
from crmforms.core.models import (
    Candidate,
    PickerError,
    Query,
    SearchOutcome,
    TransportError,
    normalize_query_key,
)
from crmforms.core.selection import LabelTicket, QueryTracker, SelectionSynchronizer
from crmforms.core.suggestion_cache import SuggestionCache, SuggestionCacheEntry

__all__ = [
    "AutoFillHint",
    "Candidate",
    "CascadingSelectionGraph",
    "DebounceScheduler",
    "DerivedFieldRule",
    "DerivedFieldState",
    "GeographyIndex",
    "GeographyNode",
    "LabelTicket",
    "LocationInfo",
    "PickerError",
    "Query",
    "QueryTracker",
    "SearchOutcome",
    "SelectionSynchronizer",
    "SuggestionCache",
    "SuggestionCacheEntry",
    "TransportError",
    "load_geography_index",
    "normalize_query_key",
]
