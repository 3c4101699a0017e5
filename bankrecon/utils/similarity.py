from __future__ import annotations

from collections import Counter


def bigrams(s: str) -> list[str]:
    return [s[i : i + 2] for i in range(len(s) - 1)]


def bigram_similarity(a: str, b: str) -> float:
    """Dice coefficient over character bigrams, in 0..1.

    Each bigram occurrence in ``a`` can satisfy at most one occurrence in
    ``b``. Callers normalize case.
    """
    if len(a) < 2 or len(b) < 2:
        return 0.0
    if a == b:
        return 1.0

    remaining = Counter(bigrams(a))
    matches = 0
    for bg in bigrams(b):
        if remaining[bg] > 0:
            matches += 1
            remaining[bg] -= 1

    return (2.0 * matches) / (len(a) - 1 + len(b) - 1)
