"""Tests for award tier ordering and merging."""

import itertools

from helpers.award_tiers import AwardTier


class TestMerge:
    def test_never_lower_than_either_side(self):
        for previous, computed in itertools.product(AwardTier, repeat=2):
            merged = AwardTier.merge(previous, computed)
            assert merged >= previous
            assert merged >= computed

    def test_mastered_survives_lower_computation(self):
        assert AwardTier.merge(AwardTier.MASTERED, AwardTier.PARTICIPATION) is AwardTier.MASTERED

    def test_missing_previous_is_none(self):
        assert AwardTier.merge(None, AwardTier.BEATEN) is AwardTier.BEATEN


class TestCoerce:
    def test_names_and_numbers(self):
        assert AwardTier.coerce("beaten") is AwardTier.BEATEN
        assert AwardTier.coerce(3) is AwardTier.MASTERED
        assert AwardTier.coerce(AwardTier.PARTICIPATION) is AwardTier.PARTICIPATION

    def test_garbage_is_none(self):
        assert AwardTier.coerce("platinum") is AwardTier.NONE
        assert AwardTier.coerce(None) is AwardTier.NONE
        assert AwardTier.coerce(17) is AwardTier.NONE


class TestDisplay:
    def test_points_accumulate_per_tier(self):
        assert [t.points for t in AwardTier] == [0, 1, 4, 7]

    def test_display_names(self):
        assert AwardTier.MASTERED.display_name == "Mastered"
        assert AwardTier.PARTICIPATION.emoji
