"""Tag catalog: the ordered label set a tagger model predicts over.

The catalog is read from the model's ``selected_tags.csv`` and is positionally
aligned with the model output. It is loaded once and never mutated, so a single
instance can be shared by every request.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING

from wdtagger.exceptions import CatalogLoadError, CatalogMismatchError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping

    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# Kaomoji tags keep their underscores.
KAOMOJIS: frozenset[str] = frozenset(
    {
        "0_0",
        "(o)_(o)",
        "+_+",
        "+_-",
        "._.",
        "<o>_<o>",
        "<|>_<|>",
        "=_=",
        ">_<",
        "3_3",
        "6_9",
        ">_o",
        "@_@",
        "^_^",
        "o_o",
        "u_u",
        "x_x",
        "|_|",
        "||_||",
    }
)


class Category(IntEnum):
    """Tag categories the thresholder acts on, keyed by their catalog code."""

    GENERAL = 0
    CHARACTER = 4
    RATING = 9

    @classmethod
    def from_code(cls, code: int) -> Category | None:
        """Return the category for a catalog code, or None if it is ignored."""
        try:
            return cls(code)
        except ValueError:
            return None


def normalize_tag_name(name: str) -> str:
    """Replace underscores with spaces, leaving kaomoji untouched."""
    if name in KAOMOJIS:
        return name
    return name.replace("_", " ")


@dataclass(frozen=True)
class Tag:
    """A single catalog entry."""

    id: int
    name: str
    category_code: int
    count: int

    @property
    def category(self) -> Category | None:
        return Category.from_code(self.category_code)


@dataclass(frozen=True)
class TagPrediction:
    """A tag paired with the probability the model assigned to it."""

    tag: Tag
    probability: float


class TagCatalog:
    """Immutable, ordered collection of tags."""

    def __init__(self, tags: Iterable[Tag]) -> None:
        self._tags: tuple[Tag, ...] = tuple(tags)

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, str]]) -> TagCatalog:
        """Build a catalog from ``tag_id,name,category,count`` records."""
        tags: list[Tag] = []
        for line_no, row in enumerate(rows, start=2):
            try:
                tags.append(
                    Tag(
                        id=int(row["tag_id"]),
                        name=normalize_tag_name(row["name"]),
                        category_code=int(row["category"]),
                        count=int(row["count"]),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise CatalogLoadError(f"Malformed tag record on line {line_no}: {exc}") from exc
        return cls(tags)

    @classmethod
    def from_csv(cls, path: str | Path) -> TagCatalog:
        """Load a catalog from a ``selected_tags.csv`` file."""
        path = Path(path)
        with path.open(newline="", encoding="utf-8") as f:
            catalog = cls.from_rows(csv.DictReader(f))
        logger.info("Loaded %d tags from %s", len(catalog), path)
        return catalog

    def __len__(self) -> int:
        return len(self._tags)

    def __iter__(self) -> Iterator[Tag]:
        return iter(self._tags)

    def __getitem__(self, index: int) -> Tag:
        return self._tags[index]

    def zip_predictions(self, probs: NDArray[np.float32]) -> list[TagPrediction]:
        """Pair each tag with the probability at the same position.

        Raises:
            CatalogMismatchError: If ``probs`` is not exactly as long as the catalog.
        """
        if len(probs) != len(self._tags):
            raise CatalogMismatchError(expected=len(self._tags), actual=len(probs))
        return [TagPrediction(tag=tag, probability=float(p)) for tag, p in zip(self._tags, probs, strict=True)]
