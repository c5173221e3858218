"""Model selection for stored configurations.

A configuration either binds a fixed model or carries selection criteria.
In criteria mode every active model is filtered, then ranked by a single
stable sort on:

1. provider priority, descending
2. input + output cost, ascending (only with prefer_lowest_cost; unknown
   cost sorts last)
3. default models before non-default ones
4. sort order, ascending

The first ranked candidate wins. No candidate means no match, not an error.
"""

import logging
import math
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from .records import (
    ConfigurationRecord,
    ModelRecord,
    ModelSelectionCriteria,
    SelectionMode,
)

if TYPE_CHECKING:
    from .repositories import ModelRepository

logger = logging.getLogger(__name__)


def model_matches_criteria(model: ModelRecord, criteria: ModelSelectionCriteria) -> bool:
    """Check a model against criteria.

    A model is excluded when it lacks any required capability, its provider's
    adapter type is not allowed, its context length is unknown or too small
    (when a minimum is set), or its known input cost exceeds the maximum.
    Unknown cost (0) is never excluded on cost grounds.
    """
    for capability in criteria.capabilities:
        if not model.has_capability(capability):
            return False

    if criteria.adapter_types:
        if model.provider is None or model.provider.adapter_type not in criteria.adapter_types:
            return False

    if criteria.min_context_length > 0:
        if model.context_length == 0 or model.context_length < criteria.min_context_length:
            return False

    if criteria.max_cost_input > 0:
        if model.cost_input > 0 and model.cost_input > criteria.max_cost_input:
            return False

    return True


def rank_candidates(
    candidates: Sequence[ModelRecord], prefer_lowest_cost: bool = False
) -> List[ModelRecord]:
    """Order candidates best-first. The sort is stable."""

    def sort_key(model: ModelRecord):
        priority = model.provider.priority if model.provider is not None else 0
        if prefer_lowest_cost:
            cost = model.total_cost if model.total_cost > 0 else math.inf
        else:
            cost = 0.0
        return (-priority, cost, not model.is_default, model.sort_order)

    return sorted(candidates, key=sort_key)


class ModelSelectionService:
    """Resolve configurations to models using a model repository."""

    def __init__(self, model_repository: "ModelRepository"):
        self._models = model_repository

    def resolve_model(self, configuration: ConfigurationRecord) -> Optional[ModelRecord]:
        """Return the model a configuration should use.

        Fixed mode returns the bound model without consulting criteria.
        Criteria mode returns the best matching active model, or None.
        """
        if configuration.selection_mode is SelectionMode.FIXED:
            return configuration.model
        return self.find_matching_model(configuration.criteria)

    def find_candidates(self, criteria: ModelSelectionCriteria) -> List[ModelRecord]:
        """All active models satisfying ``criteria``, ranked best-first."""
        candidates = [
            model for model in self._models.find_active()
            if model_matches_criteria(model, criteria)
        ]
        return rank_candidates(candidates, criteria.prefer_lowest_cost)

    def find_matching_model(self, criteria: ModelSelectionCriteria) -> Optional[ModelRecord]:
        candidates = self.find_candidates(criteria)
        if not candidates:
            logger.debug(f"No model matches criteria {criteria.to_dict()}")
            return None
        selected = candidates[0]
        logger.debug(
            f"Selected model {selected.identifier} from {len(candidates)} candidate(s)"
        )
        return selected

    def model_matches_criteria(
        self, model: ModelRecord, criteria: ModelSelectionCriteria
    ) -> bool:
        return model_matches_criteria(model, criteria)

    def rank_candidates(
        self, candidates: Sequence[ModelRecord], prefer_lowest_cost: bool = False
    ) -> List[ModelRecord]:
        return rank_candidates(candidates, prefer_lowest_cost)

    @staticmethod
    def selection_modes() -> Dict[str, str]:
        return {
            SelectionMode.FIXED.value: "Fixed model",
            SelectionMode.CRITERIA.value: "Dynamic selection by criteria",
        }
