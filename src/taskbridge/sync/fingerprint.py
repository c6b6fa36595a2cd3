"""Task fingerprinting and fuzzy matching.

Pure functions that derive a stable identity for a task and compare
titles:

* ``normalize`` -- lowercase, trim, collapse whitespace, strip
  punctuation.  ASCII word/space classes only, so the result does not
  depend on the locale.
* ``similarity`` -- ``1 - levenshtein / len(longer)`` over normalized
  forms.
* ``fingerprint`` -- SHA-256 over ``title|notes|due`` truncated to
  ``HASH_LENGTH`` hex characters, plus the title variations used by the
  indexed fuzzy lookup.

Truncated hashes can collide; callers fall through to title variations
and fuzzy matching rather than relying on the hash alone.

The back-reference helper reads the ``[things-id:...]`` /
``[todoist-id:...]`` tags that older releases embedded in notes.  They
are only used by the degraded-mode scan in the orchestrator.
"""

from __future__ import annotations

import hashlib
import re

from .models import TaskFingerprint

HASH_LENGTH = 12
DEFAULT_THRESHOLD = 0.85

_WHITESPACE = re.compile(r"\s+", re.ASCII)
_PUNCTUATION = re.compile(r"[^\w\s]", re.ASCII)


def normalize(text: str | None) -> str:
    """Return the canonical comparison form of *text*."""
    if not text:
        return ""
    text = text.lower().strip()
    text = _WHITESPACE.sub(" ", text)
    return _PUNCTUATION.sub("", text)


def _edit_distance(a: str, b: str) -> int:
    """Wagner-Fischer Levenshtein distance."""
    if len(a) < len(b):
        a, b = b, a
    prev_row = list(range(len(b) + 1))
    curr_row = [0] * (len(b) + 1)
    for i in range(1, len(a) + 1):
        curr_row[0] = i
        for j in range(1, len(b) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            curr_row[j] = min(
                prev_row[j] + 1,
                curr_row[j - 1] + 1,
                prev_row[j - 1] + cost,
            )
        prev_row, curr_row = curr_row, prev_row
    return prev_row[len(b)]


def similarity(a: str | None, b: str | None) -> float:
    """Similarity in ``[0, 1]`` between the normalized forms of *a* and *b*.

    Equal-after-normalization strings (including two empty strings) score
    1.0; empty versus non-empty scores 0.0.  Symmetric.
    """
    norm_a = normalize(a)
    norm_b = normalize(b)
    if norm_a == norm_b:
        return 1.0
    longer = max(len(norm_a), len(norm_b))
    return (longer - _edit_distance(norm_a, norm_b)) / longer


def is_similar_enough(
    a: str | None, b: str | None, threshold: float = DEFAULT_THRESHOLD
) -> bool:
    """Return ``True`` if ``similarity(a, b) >= threshold``."""
    return similarity(a, b) >= threshold


def primary_hash(
    title: str, notes: str | None = None, due: str | None = None
) -> str:
    """Short deterministic digest over normalized title/notes and raw due."""
    combined = f"{normalize(title)}|{normalize(notes)}|{due or ''}"
    digest = hashlib.sha256(combined.encode("utf-8")).hexdigest()
    return digest[:HASH_LENGTH]


def title_variations(title: str) -> list[str]:
    """Normalization forms of *title*, deduplicated, order preserved.

    Trimmed original, lowercased, fully normalized and space-removed.
    """
    trimmed = title.strip()
    normalized = normalize(title)
    variations = [
        trimmed,
        trimmed.lower(),
        normalized,
        normalized.replace(" ", ""),
    ]
    return list(dict.fromkeys(variations))


def fingerprint(
    title: str, notes: str | None = None, due: str | None = None
) -> TaskFingerprint:
    """Compute the ``TaskFingerprint`` of a task.  Pure; never raises."""
    return TaskFingerprint(
        primary_hash=primary_hash(title, notes, due),
        title_variations=title_variations(title),
        fuzzy_searchable=normalize(title),
    )


# ---------------------------------------------------------------------------
# Legacy back-references
# ---------------------------------------------------------------------------


def _backref_pattern(label: str) -> re.Pattern[str]:
    return re.compile(r"\[" + re.escape(label) + r":([^\]]+)\]")


def extract_backref(notes: str | None, label: str) -> str | None:
    """Return the id in the first ``[label:ID]`` tag of *notes*, if any."""
    if not notes:
        return None
    match = _backref_pattern(label).search(notes)
    return match.group(1) if match else None


