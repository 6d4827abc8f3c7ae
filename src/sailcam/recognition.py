"""
Recognition components: raw OCR lines to ranked sail numbers.

- CandidateExtractor: letter/digit confusion fixes, digit stripping, range
  checks, plus the mirrored reading of the digits
- SpatialGrouper: re-joins sail numbers printed across two stacked rows
- ConfidenceRanker: one entry per value, confidence threshold, stable sort
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .ocr import RawFragment, Region, region_union


# ---------------------------------------------------------------------------
# Candidate extraction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NumericCandidate:
    """A numeric reading of one fragment (or fragment group)."""

    value: int
    digit_string: str  # Digits as read, leading zeros kept
    confidence: float
    source_text: str  # Text before normalization
    region: Region
    is_digit_reversed: bool = False  # Read back to front (seen through the sail)

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "digit_string": self.digit_string,
            "confidence": self.confidence,
            "source_text": self.source_text,
            "is_digit_reversed": self.is_digit_reversed,
        }


class CandidateExtractor:
    """
    Turns OCR text into sail number candidates.

    A fragment yields zero, one, or two candidates: the forward reading and,
    when it is a different number, the reversed one. Sail numbers are printed
    on both sides of the sail, so a photo of the far side shows them mirrored.
    """

    # Letters the OCR service commonly returns in place of digits
    LETTER_TO_DIGIT = {
        "O": "0",
        "o": "0",
        "I": "1",
        "l": "1",
    }

    def __init__(
        self,
        min_digits: int = 2,
        max_digits: int = 6,
        min_value: int = 10,
        max_value: int = 999999,
        include_reversed: bool = True,
        reversed_confidence_scale: float = 1.0,
    ):
        """
        Args:
            min_digits: Minimum digit string length
            max_digits: Maximum digit string length
            min_value: Smallest plausible sail number
            max_value: Largest plausible sail number
            include_reversed: Emit the reversed reading as a second candidate
            reversed_confidence_scale: Multiplier on the fragment confidence
                for reversed candidates. 1.0 scores both readings alike; lower
                values penalize mirrored reads
        """
        self.min_digits = min_digits
        self.max_digits = max_digits
        self.min_value = min_value
        self.max_value = max_value
        self.include_reversed = include_reversed
        self.reversed_confidence_scale = reversed_confidence_scale

    def normalize(self, text: str) -> str:
        """Apply letter->digit substitutions, then drop every non-digit."""
        if not text:
            return ""
        fixed = "".join(self.LETTER_TO_DIGIT.get(c, c) for c in text)
        return "".join(c for c in fixed if "0" <= c <= "9")

    def _in_range(self, value: int) -> bool:
        return self.min_value <= value <= self.max_value

    def extract_text(
        self,
        text: str,
        confidence: float,
        region: Region,
    ) -> List[NumericCandidate]:
        """Extract candidates from arbitrary text with a known confidence/region."""
        digits = self.normalize(text)
        if not (self.min_digits <= len(digits) <= self.max_digits):
            return []

        candidates = []
        forward = int(digits)
        if self._in_range(forward):
            candidates.append(
                NumericCandidate(
                    value=forward,
                    digit_string=digits,
                    confidence=confidence,
                    source_text=text,
                    region=region,
                )
            )

        if self.include_reversed:
            mirrored = digits[::-1]
            reversed_value = int(mirrored)
            if reversed_value != forward and self._in_range(reversed_value):
                candidates.append(
                    NumericCandidate(
                        value=reversed_value,
                        digit_string=mirrored,
                        confidence=confidence * self.reversed_confidence_scale,
                        source_text=text,
                        region=region,
                        is_digit_reversed=True,
                    )
                )

        return candidates

    def extract(self, fragment: RawFragment) -> List[NumericCandidate]:
        """Extract candidates from one RawFragment."""
        return self.extract_text(fragment.text, fragment.confidence, fragment.region)

    def extract_group(self, group: "FragmentGroup") -> List[NumericCandidate]:
        """Extract candidates from a group's combined text as one unit."""
        return self.extract_text(group.text, group.confidence, group.region)


# ---------------------------------------------------------------------------
# Spatial grouping
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FragmentGroup:
    """Spatially adjacent fragments, in original fragment order."""

    fragments: Tuple[RawFragment, ...]

    @property
    def text(self) -> str:
        return "".join(f.text for f in self.fragments)

    @property
    def region(self) -> Region:
        return region_union([f.region for f in self.fragments])

    @property
    def confidence(self) -> float:
        # A joined reading is only as trustworthy as its weakest line
        return min(f.confidence for f in self.fragments)

    def __len__(self) -> int:
        return len(self.fragments)


class SpatialGrouper:
    """
    Greedy single-pass clustering of vertically adjacent fragments.

    Each unvisited fragment seeds a group and absorbs every later unvisited
    fragment adjacent to the seed. Adjacency is checked against the seed
    only, never chained through other members.
    """

    def __init__(self, adjacency_factor: float = 1.5):
        """
        Args:
            adjacency_factor: Max center distance as a multiple of the mean
                height of the two fragments
        """
        self.adjacency_factor = adjacency_factor

    def is_adjacent(self, a: RawFragment, b: RawFragment) -> bool:
        """True if the vertical center distance is under factor * mean height."""
        distance = abs(a.center_y - b.center_y)
        mean_height = (a.height + b.height) / 2.0
        return distance < self.adjacency_factor * mean_height

    def group(self, fragments: Sequence[RawFragment]) -> List[FragmentGroup]:
        """Cluster fragments. Every fragment lands in exactly one group."""
        visited = [False] * len(fragments)
        groups: List[FragmentGroup] = []

        for i, seed in enumerate(fragments):
            if visited[i]:
                continue
            visited[i] = True
            members = [seed]
            for j in range(i + 1, len(fragments)):
                if not visited[j] and self.is_adjacent(seed, fragments[j]):
                    visited[j] = True
                    members.append(fragments[j])
            groups.append(FragmentGroup(tuple(members)))

        return groups


# ---------------------------------------------------------------------------
# Deduplication and ranking
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RankedResult:
    """A deduplicated, threshold-passing detection."""

    value: int
    confidence: float
    origin_region: Region  # Kept for UI highlighting

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "origin_region": [list(p) for p in self.origin_region],
        }


class ConfidenceRanker:
    """
    Collapses candidates by value and ranks them by confidence.

    Within a value the highest confidence survives (first seen on ties).
    Survivors below ``min_confidence`` are dropped; the rest are sorted by
    descending confidence, stable on first-seen order.
    """

    def __init__(self, min_confidence: float = 0.6):
        """
        Args:
            min_confidence: Default threshold used when ``rank`` gets none
        """
        self.min_confidence = min_confidence

    @staticmethod
    def best_per_value(candidates: Sequence[NumericCandidate]) -> List[NumericCandidate]:
        """Highest-confidence candidate per value, in first-seen value order."""
        best: Dict[int, NumericCandidate] = {}
        for cand in candidates:
            current = best.get(cand.value)
            if current is None or cand.confidence > current.confidence:
                best[cand.value] = cand
        return list(best.values())

    def rank_with_discards(
        self,
        candidates: Sequence[NumericCandidate],
        min_confidence: Optional[float] = None,
    ) -> Tuple[List[RankedResult], List[NumericCandidate]]:
        """
        Rank candidates and also return the bucket winners dropped by the threshold.

        Returns:
            (ranked_results, discarded_candidates)
        """
        threshold = self.min_confidence if min_confidence is None else min_confidence

        kept: List[NumericCandidate] = []
        discarded: List[NumericCandidate] = []
        for cand in self.best_per_value(candidates):
            if cand.confidence < threshold:
                discarded.append(cand)
            else:
                kept.append(cand)

        kept.sort(key=lambda c: -c.confidence)
        results = [
            RankedResult(value=c.value, confidence=c.confidence, origin_region=c.region)
            for c in kept
        ]
        return results, discarded

    def rank(
        self,
        candidates: Sequence[NumericCandidate],
        min_confidence: Optional[float] = None,
    ) -> List[RankedResult]:
        """Deduplicate, filter and sort candidates."""
        results, _ = self.rank_with_discards(candidates, min_confidence)
        return results
