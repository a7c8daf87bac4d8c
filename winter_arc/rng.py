"""Deterministic random utilities."""

from __future__ import annotations

import hashlib
import random


class DeterministicRNG:
    """Wraps :mod:`random` with deterministic replay support."""

    def __init__(self, seed: int) -> None:
        self._seed = seed & 0xFFFFFFFF
        # nosec B311 - deterministic pseudo-RNG acceptable for game mechanics
        self._random = random.Random(self._seed)

    @classmethod
    def for_key(cls, seed: int, *parts: object) -> "DeterministicRNG":
        """Derive a stream from a base seed and a stable key (e.g. instance and date)."""

        material = ":".join([str(seed), *(str(part) for part in parts)])
        digest = hashlib.sha256(material.encode("utf-8")).digest()
        return cls(int.from_bytes(digest[:4], "big"))

    @property
    def seed(self) -> int:
        return self._seed

    def choice(self, seq):
        return self._random.choice(seq)

    def randint(self, a: int, b: int) -> int:
        return self._random.randint(a, b)

    def random(self) -> float:
        return self._random.random()

    def chance(self, probability: float) -> bool:
        """Return True with the given probability (clamped to 0..1)."""

        probability = max(0.0, min(1.0, probability))
        return self._random.random() < probability
