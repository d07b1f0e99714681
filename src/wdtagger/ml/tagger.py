"""Tagging pipeline: normalize -> infer -> align with catalog -> threshold."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from wdtagger.ml.preprocessing import decode_image, normalize_image
from wdtagger.ml.thresholding import classify

if TYPE_CHECKING:
    from PIL import Image

    from wdtagger.ml.engine import InferenceEngine
    from wdtagger.ml.tags import TagCatalog
    from wdtagger.ml.thresholding import CategoryResults, ThresholdConfig

logger = logging.getLogger(__name__)


class ImageTagger:
    """Tags images with a single model and its catalog.

    Holds no per-request state; one instance can serve concurrent requests.
    """

    def __init__(self, engine: InferenceEngine, catalog: TagCatalog) -> None:
        self._engine = engine
        self._catalog = catalog

    @property
    def catalog(self) -> TagCatalog:
        return self._catalog

    def tag(self, image: Image.Image, config: ThresholdConfig) -> CategoryResults:
        """Run the full pipeline on a decoded image."""
        tensor = normalize_image(image, self._engine.target_size)
        probs = self._engine.infer(tensor)
        predictions = self._catalog.zip_predictions(probs)
        results = classify(predictions, config)
        logger.debug(
            "Tagged image: %d general, %d character (thresholds %.3f / %.3f)",
            len(results.general),
            len(results.character),
            results.general_threshold,
            results.character_threshold,
        )
        return results

    def tag_bytes(self, image_bytes: bytes, config: ThresholdConfig, max_pixels: int) -> CategoryResults:
        """Decode raw upload bytes and tag them."""
        with decode_image(image_bytes, max_pixels) as image:
            return self.tag(image, config)
