"""Tests for candidate extraction, spatial grouping and ranking."""

import pytest

from sailcam.recognition import (
    CandidateExtractor,
    ConfidenceRanker,
    FragmentGroup,
    NumericCandidate,
    RankedResult,
    SpatialGrouper,
)

from fakes import frag


REGION = ((0.0, 0.0), (10.0, 0.0), (10.0, 10.0), (0.0, 10.0))


def cand(value, conf, region=REGION, reversed_=False):
    return NumericCandidate(
        value=value,
        digit_string=str(value),
        confidence=conf,
        source_text=str(value),
        region=region,
        is_digit_reversed=reversed_,
    )


# ---------------------------------------------------------------------------
# CandidateExtractor Tests
# ---------------------------------------------------------------------------


class TestCandidateExtractor:
    """Tests for CandidateExtractor."""

    @pytest.fixture
    def extractor(self):
        return CandidateExtractor()

    @pytest.mark.parametrize("text", ["10", "99", "123", "4567", "12345", "999999"])
    def test_forward_value(self, extractor, text):
        """The forward reading is always the first candidate."""
        candidates = extractor.extract(frag(text))

        assert candidates[0].value == int(text)
        assert candidates[0].digit_string == text
        assert candidates[0].is_digit_reversed is False

    @pytest.mark.parametrize("text,expected", [("12", [12, 21]), ("4271", [4271, 1724]), ("305", [305, 503])])
    def test_reversed_reading(self, extractor, text, expected):
        """Digits that read differently backwards give two candidates."""
        candidates = extractor.extract(frag(text))

        assert [c.value for c in candidates] == expected
        assert [c.is_digit_reversed for c in candidates] == [False, True]

    @pytest.mark.parametrize("text", ["44", "121", "90909"])
    def test_palindrome_single_candidate(self, extractor, text):
        assert len(extractor.extract(frag(text))) == 1

    @pytest.mark.parametrize("text", ["", "7", "1234567", "abc", "--"])
    def test_length_out_of_range(self, extractor, text):
        assert extractor.extract(frag(text)) == []

    def test_value_out_of_range(self, extractor):
        """'00' has two digits but is below the minimum value."""
        assert extractor.extract(frag("00")) == []

    def test_reversal_out_of_range_dropped(self, extractor):
        """'10' reversed is '01' = 1, which is not a plausible sail number."""
        candidates = extractor.extract(frag("10"))

        assert [c.value for c in candidates] == [10]

    def test_letter_substitution_before_filtering(self, extractor):
        """O1I -> 011 -> 11 forward, 110 reversed."""
        candidates = extractor.extract(frag("O1I"))

        assert [c.value for c in candidates] == [11, 110]
        assert candidates[0].digit_string == "011"
        assert candidates[1].digit_string == "110"
        assert candidates[1].is_digit_reversed is True
        assert candidates[0].source_text == "O1I"

    def test_substitution_makes_short_text_valid(self, extractor):
        candidates = extractor.extract(frag("IO"))
        assert candidates[0].value == 10

    def test_normalize_strips_noise(self, extractor):
        assert extractor.normalize("GBR 4O7l") == "4071"
        assert extractor.normalize("") == ""

    def test_reversed_confidence_unscaled_by_default(self, extractor):
        forward, mirrored = extractor.extract(frag("12", conf=0.8))

        assert forward.confidence == pytest.approx(0.8)
        assert mirrored.confidence == pytest.approx(0.8)

    def test_reversed_confidence_scaled(self):
        extractor = CandidateExtractor(reversed_confidence_scale=0.9)
        forward, mirrored = extractor.extract(frag("12", conf=0.8))

        assert forward.confidence == pytest.approx(0.8)
        assert mirrored.confidence == pytest.approx(0.72)

    def test_reversal_disabled(self):
        extractor = CandidateExtractor(include_reversed=False)
        assert [c.value for c in extractor.extract(frag("12"))] == [12]

    def test_region_carried(self, extractor):
        fragment = frag("123", y=5.0)
        assert all(c.region == fragment.region for c in extractor.extract(fragment))

    def test_extract_group_uses_combined_text(self, extractor):
        group = FragmentGroup((frag("12", conf=0.9, y=0), frag("34", conf=0.7, y=12)))
        candidates = extractor.extract_group(group)

        assert candidates[0].value == 1234
        assert candidates[0].confidence == pytest.approx(0.7)


# ---------------------------------------------------------------------------
# SpatialGrouper Tests
# ---------------------------------------------------------------------------


class TestSpatialGrouper:
    """Tests for SpatialGrouper."""

    @pytest.fixture
    def grouper(self):
        return SpatialGrouper(adjacency_factor=1.5)

    def test_stacked_rows_merged(self, grouper):
        """Centers 12 apart, mean height 10: 12 < 15, merged."""
        top = frag("12", y=0, h=10)
        bottom = frag("34", y=12, h=10)

        groups = grouper.group([top, bottom])

        assert len(groups) == 1
        assert groups[0].fragments == (top, bottom)
        assert groups[0].text == "1234"

    def test_distant_rows_separate(self, grouper):
        """Centers 20 apart: 20 >= 15, separate groups."""
        groups = grouper.group([frag("12", y=0), frag("34", y=20)])

        assert len(groups) == 2

    def test_boundary_is_exclusive(self, grouper):
        """Exactly 1.5x mean height apart is not adjacent."""
        assert grouper.is_adjacent(frag("1", y=0), frag("2", y=15)) is False
        assert grouper.is_adjacent(frag("1", y=0), frag("2", y=14.9)) is True

    def test_adjacency_uses_mean_height(self, grouper):
        """Mean of 10 and 30 is 20, so 25 apart is adjacent (< 30)."""
        small = frag("1", y=0, h=10)  # center 5
        tall = frag("2", y=15, h=30)  # center 30
        assert grouper.is_adjacent(small, tall) is True

    def test_seed_only_adjacency(self, grouper):
        """C is adjacent to B but not to seed A, so it starts its own group."""
        a = frag("A", y=0)  # center 5
        b = frag("B", y=12)  # center 17
        c = frag("C", y=24)  # center 29

        groups = grouper.group([a, b, c])

        assert [g.fragments for g in groups] == [(a, b), (c,)]

    def test_original_order_preserved(self, grouper):
        """Members keep input order even when a later fragment sits higher."""
        lower = frag("34", y=12)
        upper = frag("12", y=0)

        groups = grouper.group([lower, upper])

        assert groups[0].text == "3412"

    def test_group_region_and_confidence(self, grouper):
        group = grouper.group([frag("12", conf=0.9, y=0, x=0, w=20), frag("34", conf=0.6, y=12, x=5, w=30)])[0]

        assert group.region == ((0.0, 0.0), (35.0, 0.0), (35.0, 22.0), (0.0, 22.0))
        assert group.confidence == pytest.approx(0.6)

    def test_every_fragment_grouped_once(self, grouper):
        fragments = [frag(str(i), y=i * 7.0) for i in range(10)]
        groups = grouper.group(fragments)

        members = [f for g in groups for f in g.fragments]
        assert sorted(members, key=lambda f: f.text) == sorted(fragments, key=lambda f: f.text)

    def test_empty(self, grouper):
        assert grouper.group([]) == []


# ---------------------------------------------------------------------------
# ConfidenceRanker Tests
# ---------------------------------------------------------------------------


class TestConfidenceRanker:
    """Tests for ConfidenceRanker."""

    @pytest.fixture
    def ranker(self):
        return ConfidenceRanker(min_confidence=0.6)

    def test_duplicates_keep_highest(self, ranker):
        results = ranker.rank([cand(42, 0.5), cand(42, 0.9)])

        assert results == [RankedResult(value=42, confidence=0.9, origin_region=REGION)]

    def test_below_threshold_dropped(self, ranker):
        results = ranker.rank([cand(17, 0.55), cand(203, 0.7)])

        assert [r.value for r in results] == [203]

    def test_threshold_inclusive(self, ranker):
        assert [r.value for r in ranker.rank([cand(17, 0.6)])] == [17]

    def test_sorted_descending_stable_ties(self, ranker):
        results = ranker.rank([cand(17, 0.8), cand(203, 0.8), cand(55, 0.9)])

        assert [r.value for r in results] == [55, 17, 203]

    def test_equal_duplicate_keeps_first(self, ranker):
        first = ((1.0, 1.0), (2.0, 1.0), (2.0, 2.0), (1.0, 2.0))
        results = ranker.rank([cand(42, 0.8, region=first), cand(42, 0.8)])

        assert results[0].origin_region == first

    def test_reversed_duplicate_collapsed(self, ranker):
        """A reversed reading and a forward reading of the same value merge."""
        results = ranker.rank([cand(71, 0.72, reversed_=True), cand(71, 0.95)])

        assert len(results) == 1
        assert results[0].confidence == pytest.approx(0.95)

    def test_override_threshold(self, ranker):
        assert ranker.rank([cand(17, 0.3)], min_confidence=0.2)[0].value == 17

    def test_discards_reported(self, ranker):
        results, discarded = ranker.rank_with_discards([cand(17, 0.4), cand(17, 0.5), cand(18, 0.9)])

        assert [r.value for r in results] == [18]
        assert [(c.value, c.confidence) for c in discarded] == [(17, 0.5)]

    def test_empty(self, ranker):
        assert ranker.rank([]) == []
