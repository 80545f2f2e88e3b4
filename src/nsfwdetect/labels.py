"""Classification result type and label-file parsing."""

from __future__ import annotations

from dataclasses import astuple, dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

# Output positions of the packaged model. The label file is expected to list
# the same names in the same order.
CATEGORIES: tuple[str, ...] = ("drawing", "hentai", "neutral", "porn", "sexy")

THRESHOLD_SAFE: float = 0.75
THRESHOLD_MEDIUM: float = 0.85
THRESHOLD_HIGH: float = 0.9

# Above this neutral score an image is never flagged.
_NEUTRAL_OVERRIDE: float = 0.25


@dataclass(frozen=True)
class Labels:
    """Confidence scores for the five content categories."""

    drawing: float
    hentai: float
    neutral: float
    porn: float
    sexy: float

    @classmethod
    def from_vector(cls, scores: Sequence[float]) -> Labels:
        """Map a raw output row to named scores by position.

        Index 0 is drawing, 1 hentai, 2 neutral, 3 porn and 4 sexy. The order
        is fixed by the model artifact and is not derived from the label file.
        """
        return cls(
            drawing=float(scores[0]),
            hentai=float(scores[1]),
            neutral=float(scores[2]),
            porn=float(scores[3]),
            sexy=float(scores[4]),
        )

    def nsfw(self, threshold: float) -> bool:
        """Return True if porn, sexy or hentai exceeds ``threshold``."""
        if self.neutral > _NEUTRAL_OVERRIDE:
            return False
        return self.porn > threshold or self.sexy > threshold or self.hentai > threshold

    def is_safe(self) -> bool:
        return not self.nsfw(THRESHOLD_SAFE)

    def as_dict(self) -> dict[str, float]:
        return dict(zip(CATEGORIES, astuple(self), strict=True))


def load_labels(path: Path) -> tuple[str, ...]:
    """Read label names from a text file, one per line.

    Surrounding whitespace is stripped and blank lines are skipped.

    Raises:
        OSError: If the file cannot be read.
        UnicodeDecodeError: If the file is not valid UTF-8.
    """
    with path.open(encoding="utf-8") as fh:
        return tuple(line.strip() for line in fh if line.strip())
