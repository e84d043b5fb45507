"""Feature extractors: image bytes in, fixed-length feature vector out."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class FeatureExtractor(Protocol):
    """Black-box embedding model consumed by registration and verification.

    Implementations raise ``ExtractionError`` for undecodable images and
    ``ExtractorUnavailableError`` when the model cannot answer in time.
    """

    async def extract(self, image_bytes: bytes, *, augment: bool = False) -> list[float]:
        """Return the feature vector for one image.

        ``augment`` asks for a lighting-normalized variant, used at
        registration to average two views of the same photo.
        """
        ...

    @property
    def model_version(self) -> str:
        """Identifier of the extractor; vectors from different versions are not comparable."""
        ...
