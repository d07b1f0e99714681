"""Per-category tag selection, including mCut adaptive thresholds."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from wdtagger.exceptions import EmptyGroupError, InsufficientDataError
from wdtagger.ml.tags import Category

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike

    from wdtagger.ml.tags import TagPrediction

DEFAULT_THRESHOLD: float = 0.5
CHARACTER_FLOOR: float = 0.15


@dataclass(frozen=True)
class ThresholdConfig:
    """How each category's cutoff is chosen."""

    general_mcut: bool = False
    character_mcut: bool = False
    general_threshold: float = DEFAULT_THRESHOLD
    character_threshold: float = DEFAULT_THRESHOLD
    # Lower bound on the adaptive character threshold.
    character_floor: float = CHARACTER_FLOOR


@dataclass(frozen=True)
class CategoryResults:
    """Selected predictions per category for one image."""

    rating: tuple[TagPrediction, ...]
    character: tuple[TagPrediction, ...]
    general: tuple[TagPrediction, ...]
    general_threshold: float
    character_threshold: float

    def general_by_confidence(self) -> list[TagPrediction]:
        """General predictions, most confident first."""
        return sorted(self.general, key=lambda p: p.probability, reverse=True)

    def general_tag_string(self) -> str:
        """Comma-separated general tag names, most confident first."""
        return ", ".join(p.tag.name for p in self.general_by_confidence())


def mcut_threshold(probs: ArrayLike) -> float:
    """Maximum Cut Thresholding (mCut).

    Reference:
        Largeron, C., Moulin, C., & Gery, M. (2012). MCut: A Thresholding Strategy
        for Multi-label Classification. In 11th International Symposium, IDA 2012
        (pp. 172-183).

    Args:
        probs: Probabilities to split.

    Returns:
        The midpoint of the largest gap between consecutive probabilities once
        sorted in descending order. Equal gaps resolve to the highest one.

    Raises:
        InsufficientDataError: If fewer than two probabilities are given.
    """
    values = np.asarray(probs, dtype=np.float64).ravel()
    if values.size < 2:
        raise InsufficientDataError(f"mCut needs at least 2 probabilities, got {values.size}")

    sorted_probs = np.sort(values)[::-1]
    difs = sorted_probs[:-1] - sorted_probs[1:]
    # argmax returns the first occurrence
    t = int(difs.argmax())
    return float((sorted_probs[t] + sorted_probs[t + 1]) / 2)


def _adaptive(group: Sequence[TagPrediction], category: Category) -> float:
    if len(group) < 2:
        raise EmptyGroupError(category.name.lower(), len(group))
    return mcut_threshold([p.probability for p in group])


def classify(predictions: Sequence[TagPrediction], config: ThresholdConfig) -> CategoryResults:
    """Split predictions by category and keep the ones above each category's threshold.

    Ratings are always returned in full. Tags in categories other than rating,
    general and character are dropped. Selection uses a strict ``>`` so a tag
    sitting exactly on the threshold is excluded.

    Raises:
        EmptyGroupError: If mCut is enabled for a category with fewer than two tags.
    """
    groups: dict[Category, list[TagPrediction]] = {category: [] for category in Category}
    for prediction in predictions:
        category = prediction.tag.category
        if category is not None:
            groups[category].append(prediction)

    general = groups[Category.GENERAL]
    general_thresh = config.general_threshold
    if config.general_mcut:
        general_thresh = _adaptive(general, Category.GENERAL)

    character = groups[Category.CHARACTER]
    character_thresh = config.character_threshold
    if config.character_mcut:
        character_thresh = max(config.character_floor, _adaptive(character, Category.CHARACTER))

    return CategoryResults(
        rating=tuple(groups[Category.RATING]),
        character=tuple(p for p in character if p.probability > character_thresh),
        general=tuple(p for p in general if p.probability > general_thresh),
        general_threshold=general_thresh,
        character_threshold=character_thresh,
    )
