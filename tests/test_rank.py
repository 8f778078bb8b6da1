"""Tests for ranking and printing recommendations."""

import pytest

from music_map_recommender import (
    AggregateEntry,
    InvalidComparison,
    RankedCandidate,
    format_candidate,
    format_distance,
    print_results,
    rank_candidates,
)


ENTRIES = {
    "Thom Yorke": AggregateEntry(occurrences=3, distance_sum=9),
    "Blur": AggregateEntry(occurrences=3, distance_sum=6),
    "Placebo": AggregateEntry(occurrences=1, distance_sum=1),
    "Pulp": AggregateEntry(occurrences=2, distance_sum=10),
    "muse": AggregateEntry(occurrences=5, distance_sum=5),
}


class TestRankCandidates:
    def test_sorts_by_occurrences_then_average_distance(self) -> None:
        ranked = rank_candidates(ENTRIES, [], 10)
        assert [item.name for item in ranked] == ["muse", "Blur", "Thom Yorke", "Pulp", "Placebo"]
        for first, second in zip(ranked, ranked[1:]):
            assert first.occurrences > second.occurrences or (
                first.occurrences == second.occurrences
                and first.average_distance <= second.average_distance
            )

    def test_known_artists_are_removed_case_insensitively(self) -> None:
        ranked = rank_candidates(ENTRIES, ["Muse", "BLUR"], 10)
        names = [item.name for item in ranked]
        assert "muse" not in names
        assert "Blur" not in names
        assert names == ["Thom Yorke", "Pulp", "Placebo"]

    def test_average_distance(self) -> None:
        ranked = rank_candidates({"Pulp": AggregateEntry(2, 5)}, [], 10)
        assert ranked == [RankedCandidate(name="Pulp", occurrences=2, average_distance=2.5)]

    @pytest.mark.parametrize("limit, expected", [(0, 0), (2, 2), (5, 5), (50, 5)])
    def test_truncates_to_limit(self, limit: int, expected: int) -> None:
        assert len(rank_candidates(ENTRIES, [], limit)) == expected

    def test_full_ties_are_ordered_by_name(self) -> None:
        entries = {"b": AggregateEntry(1, 2), "A": AggregateEntry(1, 2), "c": AggregateEntry(1, 2)}
        assert [item.name for item in rank_candidates(entries, [], 10)] == ["A", "b", "c"]

    def test_zero_occurrences_is_invalid(self) -> None:
        with pytest.raises(InvalidComparison):
            rank_candidates({"Ghost": AggregateEntry(occurrences=0, distance_sum=0)}, [], 10)

    def test_invalid_entry_for_known_artist_is_filtered_first(self) -> None:
        entries = {"Ghost": AggregateEntry(occurrences=0, distance_sum=0)}
        assert rank_candidates(entries, ["ghost"], 10) == []

    def test_negative_limit(self) -> None:
        with pytest.raises(ValueError):
            rank_candidates(ENTRIES, [], -1)


class TestPresenter:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (5.0, "5"),
            (0.0, "0"),
            (2.5, "2.5"),
            (10 / 3, "3.3333333333333335"),
            (5e-05, "0.00005"),
            (1.5e-07, "0.00000015"),
            (1e16, "10000000000000000"),
        ],
    )
    def test_format_distance(self, value: float, expected: str) -> None:
        assert format_distance(value) == expected

    def test_plain_line_is_name_only(self) -> None:
        candidate = RankedCandidate("Thom Yorke", 2, 5.0)
        assert format_candidate(candidate) == "Thom Yorke"

    def test_verbose_line(self) -> None:
        candidate = RankedCandidate("Thom Yorke", 2, 5.0)
        assert format_candidate(candidate, verbose=True) == (
            "Thom Yorke (2 occurrencies, 5 avg distance)"
        )

    def test_print_results_in_order(self, capsys) -> None:
        print_results([RankedCandidate("Blur", 3, 2.0), RankedCandidate("Pulp", 2, 2.5)], verbose=True)
        assert capsys.readouterr().out.splitlines() == [
            "Blur (3 occurrencies, 2 avg distance)",
            "Pulp (2 occurrencies, 2.5 avg distance)",
        ]
