"""Shared fixtures: a deterministic inference engine and a small tag catalog."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from wdtagger.ml.tags import Category, Tag, TagCatalog

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

# Positional order mirrors the model output below.
CATALOG_ROWS: list[dict[str, str]] = [
    {"tag_id": "9999999", "name": "general", "category": "9", "count": "807516"},
    {"tag_id": "9999998", "name": "sensitive", "category": "9", "count": "1056"},
    {"tag_id": "470575", "name": "1girl", "category": "0", "count": "4225150"},
    {"tag_id": "212816", "name": "solo", "category": "0", "count": "3546478"},
    {"tag_id": "13197", "name": "long_hair", "category": "0", "count": "2934638"},
    {"tag_id": "402", "name": "^_^", "category": "0", "count": "25000"},
    {"tag_id": "1111", "name": "some_artist", "category": "1", "count": "1200"},
    {"tag_id": "428897", "name": "hatsune_miku", "category": "4", "count": "120000"},
    {"tag_id": "1234", "name": "kagamine_rin", "category": "4", "count": "30000"},
]

PROBS: list[float] = [0.9, 0.1, 0.98, 0.95, 0.6, 0.3, 0.99, 0.7, 0.05]


class StubEngine:
    """Returns a fixed probability vector and records what it was fed."""

    def __init__(self, probs: Sequence[float], target_size: int = 8) -> None:
        self._probs = np.asarray(probs, dtype=np.float32)
        self._target_size = target_size
        self.calls: list[NDArray[np.float32]] = []
        self.close_count = 0

    @property
    def target_size(self) -> int:
        return self._target_size

    def infer(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        self.calls.append(tensor)
        return self._probs.copy()

    def close(self) -> None:
        self.close_count += 1


def make_tag(tag_id: int, category: Category | int, name: str | None = None) -> Tag:
    code = int(category)
    return Tag(id=tag_id, name=name or f"tag {tag_id}", category_code=code, count=0)


@pytest.fixture()
def catalog() -> TagCatalog:
    return TagCatalog.from_rows(CATALOG_ROWS)


@pytest.fixture()
def stub_engine() -> StubEngine:
    return StubEngine(PROBS)
