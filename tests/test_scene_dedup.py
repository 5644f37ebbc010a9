"""
Tests for batch scene deduplication.
"""

import dataclasses
import logging

import pytest

from scene_pipeline.dedup.scene_dedup import (
    DedupResult,
    deduplicate_scenes,
    find_similar_scenes,
    get_dedup_stats,
)

from conftest import make_scene, numbered_scenes


def copy_of(scene):
    return dataclasses.replace(scene)


class TestDeduplicateScenes:
    """Tests for deduplicate_scenes function."""

    def test_all_unique(self):
        existing = numbered_scenes(0, 3)
        candidates = numbered_scenes(3, 3)

        result = deduplicate_scenes(existing, candidates, threshold=0.75)

        assert result.unique == candidates
        assert result.duplicates == []
        assert result.similarities == []

    def test_duplicate_of_existing_reports_indices(self):
        existing = numbered_scenes(0, 2)
        candidates = [copy_of(existing[1])]

        result = deduplicate_scenes(existing, candidates, threshold=0.75)

        assert result.unique == []
        assert result.duplicates == candidates
        report = result.similarities[0]
        assert report.scene1_index == 1
        assert report.scene2_index == 2
        assert report.similarity == pytest.approx(1.0)
        assert report.reason == "High similarity with scene 2: 100.0%"

    def test_duplicate_within_batch(self):
        existing = numbered_scenes(0, 2)
        fresh = numbered_scenes(2, 1)[0]
        candidates = [copy_of(existing[0]), fresh, copy_of(fresh)]

        result = deduplicate_scenes(existing, candidates, threshold=0.75)

        assert result.unique == [fresh]
        assert len(result.duplicates) == 2

        first, second = result.similarities
        assert (first.scene1_index, first.scene2_index) == (0, 2)
        assert first.reason.startswith("High similarity with scene 1")
        # fresh was accepted at index 2; its copy would have taken index 3
        assert (second.scene1_index, second.scene2_index) == (2, 3)
        assert second.reason == "High similarity with new scene: 100.0%"

    def test_every_candidate_lands_in_exactly_one_list(self):
        existing = numbered_scenes(0, 4)
        candidates = numbered_scenes(4, 3) + [copy_of(existing[2]), copy_of(existing[3])]

        result = deduplicate_scenes(existing, candidates, threshold=0.75)

        assert len(result.unique) + len(result.duplicates) == len(candidates)
        assert len(result.similarities) == len(result.duplicates)
        for scene in candidates:
            in_unique = any(scene is s for s in result.unique)
            in_dupes = any(scene is s for s in result.duplicates)
            assert in_unique != in_dupes

    def test_empty_inputs(self):
        assert deduplicate_scenes([], []).unique == []
        candidates = numbered_scenes(0, 2)
        assert deduplicate_scenes([], candidates).unique == candidates

    def test_threshold_zero_keeps_only_first(self):
        candidates = numbered_scenes(0, 3)

        result = deduplicate_scenes([], candidates, threshold=0.0)

        assert result.unique == candidates[:1]
        assert len(result.duplicates) == 2

    def test_threshold_one_keeps_near_duplicates(self):
        scene1 = make_scene("chef marco prepares fresh pasta in busy kitchen")
        scene2 = make_scene("chef marco prepares fresh pasta in the busy kitchen")

        result = deduplicate_scenes([scene1], [scene2], threshold=1.0)

        assert result.unique == [scene2]

    def test_default_threshold(self):
        existing = numbered_scenes(0, 1)
        result = deduplicate_scenes(existing, [copy_of(existing[0])])
        assert len(result.duplicates) == 1

    def test_higher_threshold_never_removes_more(self):
        existing = numbered_scenes(0, 3)
        near = make_scene(
            existing[0].description + " again",
            obj=existing[0].object,
            environment=existing[0].environment,
        )
        candidates = numbered_scenes(3, 2) + [near, copy_of(existing[1])]

        counts = [
            len(deduplicate_scenes(existing, candidates, threshold=t).duplicates)
            for t in (0.5, 0.75, 0.9, 1.0)
        ]

        assert counts == sorted(counts, reverse=True)

    def test_trailing_adjective_is_duplicate(self):
        first = make_scene("Chef Marco plates chocolate dessert", character="Chef Marco")
        second = make_scene("Chef Marco plates chocolate dessert warm", character="Chef Marco")

        result = deduplicate_scenes([first], [second], threshold=0.8)

        assert result.duplicates == [second]
        assert result.similarities[0].scene1_index == 0
        assert result.similarities[0].similarity >= 0.8

    def test_repeated_runs_partition_identically(self):
        existing = numbered_scenes(0, 3)
        candidates = numbered_scenes(3, 3) + [copy_of(existing[2]), copy_of(existing[0])]

        first = deduplicate_scenes(existing, candidates, threshold=0.75)
        second = deduplicate_scenes(existing, candidates, threshold=0.75)

        assert first.unique == second.unique
        assert first.duplicates == second.duplicates
        assert first.similarities == second.similarities

    def test_logs_removals(self, caplog):
        existing = numbered_scenes(0, 1)
        with caplog.at_level(logging.INFO, logger="scene_pipeline"):
            deduplicate_scenes(existing, [copy_of(existing[0])])
        assert "Removed 1/1 scenes" in caplog.text


class TestFindSimilarScenes:
    """Tests for find_similar_scenes function."""

    def test_reports_pairs_sorted(self):
        base = numbered_scenes(0, 2)
        near = make_scene(
            base[0].description + " again",
            obj=base[0].object,
            environment=base[0].environment,
            prompt=base[0].prompt,
        )
        scenes = [base[0], base[1], near, copy_of(base[1])]

        pairs = find_similar_scenes(scenes, threshold=0.75)

        assert [(p.scene1_index, p.scene2_index) for p in pairs] == [(1, 3), (0, 2)]
        assert pairs[0].reason == "Scenes 2 and 4 are 100.0% similar"
        assert pairs[0].similarity >= pairs[1].similarity

    def test_no_pairs(self):
        assert find_similar_scenes(numbered_scenes(0, 4), threshold=0.75) == []

    def test_single_scene(self):
        assert find_similar_scenes(numbered_scenes(0, 1)) == []


class TestDedupStats:
    """Tests for get_dedup_stats function."""

    def test_stats(self):
        existing = numbered_scenes(0, 2)
        candidates = numbered_scenes(2, 3) + [copy_of(existing[0])]

        stats = get_dedup_stats(deduplicate_scenes(existing, candidates))

        assert stats.total_processed == 4
        assert stats.unique_count == 3
        assert stats.duplicate_count == 1
        assert stats.removal_rate == pytest.approx(0.25)
        assert stats.average_similarity == pytest.approx(1.0)

    def test_empty_result(self):
        stats = get_dedup_stats(DedupResult())
        assert stats.total_processed == 0
        assert stats.removal_rate == 0.0
        assert stats.average_similarity == 0.0
        assert stats.to_dict()["duplicate_count"] == 0
