"""Deterministic feature extractor for development and tests."""

from __future__ import annotations

import hashlib

from mediguard.core.errors import ExtractionError


class MockFeatureExtractor:
    """Derives a stable pseudo-embedding from the image bytes.

    The same bytes always yield the same vector. Explicit ``vectors`` take
    precedence, which lets tests pin exact probe and catalog vectors.
    """

    def __init__(
        self,
        *,
        dimension: int = 64,
        vectors: dict[bytes, list[float]] | None = None,
    ) -> None:
        self._dimension = dimension
        self._vectors = dict(vectors or {})
        self.calls: list[tuple[bytes, bool]] = []

    @property
    def model_version(self) -> str:
        return f"mock-{self._dimension}"

    def register(self, image_bytes: bytes, vector: list[float]) -> None:
        self._vectors[image_bytes] = list(vector)

    async def extract(self, image_bytes: bytes, *, augment: bool = False) -> list[float]:
        self.calls.append((image_bytes, augment))
        if not image_bytes:
            raise ExtractionError("Image is empty")

        if image_bytes in self._vectors:
            vector = list(self._vectors[image_bytes])
        else:
            vector = _hash_vector(image_bytes, self._dimension)

        if augment:
            # Brightness-normalized view: uniform gain keeps direction intact
            vector = [v * 1.05 for v in vector]
        return vector


def _hash_vector(image_bytes: bytes, dimension: int) -> list[float]:
    values: list[float] = []
    counter = 0
    while len(values) < dimension:
        digest = hashlib.sha256(image_bytes + counter.to_bytes(4, "big")).digest()
        values.extend((b / 127.5) - 1.0 for b in digest)
        counter += 1
    return values[:dimension]
