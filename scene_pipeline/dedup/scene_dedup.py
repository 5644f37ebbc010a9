"""
Batch deduplication of generated scenes.

A new batch is filtered against every scene accepted so far and against the
scenes already accepted from the same batch. Duplicates are reported, never
silently dropped.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from scene_pipeline.infra.config import DEFAULT_DEDUP_THRESHOLD
from scene_pipeline.pipeline.entities import Scene

from .similarity import calculate_scene_similarity

logger = logging.getLogger(__name__)


@dataclass
class SceneSimilarity:
    """
    One flagged pair.

    Attributes:
        scene1_index: Index of the matched scene in existing + accepted
        scene2_index: Index the candidate would have taken if accepted
        similarity: Score that crossed the threshold
        reason: Human-readable explanation
    """
    scene1_index: int
    scene2_index: int
    similarity: float
    reason: str

    def to_dict(self) -> dict:
        return {
            "scene1_index": self.scene1_index,
            "scene2_index": self.scene2_index,
            "similarity": round(self.similarity, 4),
            "reason": self.reason,
        }


@dataclass
class DedupResult:
    """Outcome of deduplicating one batch."""
    unique: List[Scene] = field(default_factory=list)
    duplicates: List[Scene] = field(default_factory=list)
    similarities: List[SceneSimilarity] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "unique": [scene.to_dict() for scene in self.unique],
            "duplicates": [scene.to_dict() for scene in self.duplicates],
            "similarities": [s.to_dict() for s in self.similarities],
        }


@dataclass
class DedupStats:
    """Summary numbers for a DedupResult."""
    total_processed: int
    unique_count: int
    duplicate_count: int
    removal_rate: float
    average_similarity: float

    def to_dict(self) -> dict:
        return {
            "total_processed": self.total_processed,
            "unique_count": self.unique_count,
            "duplicate_count": self.duplicate_count,
            "removal_rate": round(self.removal_rate, 4),
            "average_similarity": round(self.average_similarity, 4),
        }


def _percent(similarity: float) -> str:
    return f"{similarity * 100:.1f}%"


def deduplicate_scenes(
    existing: List[Scene],
    candidates: List[Scene],
    threshold: Optional[float] = None,
) -> DedupResult:
    """
    Remove duplicate or near-duplicate scenes from a new batch.

    Each candidate is compared with the existing scenes in order, then with
    the candidates accepted earlier in this batch. The first score at or
    above the threshold marks it a duplicate.

    Args:
        existing: All scenes accepted so far
        candidates: New batch to filter
        threshold: Similarity at/above which a candidate is a duplicate

    Returns:
        DedupResult with unique scenes, duplicates and one report per duplicate
    """
    if threshold is None:
        threshold = DEFAULT_DEDUP_THRESHOLD

    result = DedupResult()

    for candidate in candidates:
        would_be_index = len(existing) + len(result.unique)
        match = None

        for i, scene in enumerate(existing):
            similarity = calculate_scene_similarity(scene, candidate)
            if similarity >= threshold:
                match = SceneSimilarity(
                    scene1_index=i,
                    scene2_index=would_be_index,
                    similarity=similarity,
                    reason=f"High similarity with scene {i + 1}: {_percent(similarity)}",
                )
                break

        if match is None:
            for i, scene in enumerate(result.unique):
                similarity = calculate_scene_similarity(scene, candidate)
                if similarity >= threshold:
                    match = SceneSimilarity(
                        scene1_index=len(existing) + i,
                        scene2_index=would_be_index,
                        similarity=similarity,
                        reason=f"High similarity with new scene: {_percent(similarity)}",
                    )
                    break

        if match is None:
            result.unique.append(candidate)
        else:
            result.duplicates.append(candidate)
            result.similarities.append(match)

    if result.duplicates:
        logger.info(
            f"[Dedup] Removed {len(result.duplicates)}/{len(candidates)} scenes "
            f"(threshold={threshold:.2f})"
        )
        for report in result.similarities:
            logger.debug(f"[Dedup] {report.reason}")

    return result


def find_similar_scenes(scenes: List[Scene], threshold: Optional[float] = None) -> List[SceneSimilarity]:
    """
    Find every pair in a scene list at or above the threshold.

    Returns:
        Pairs sorted by descending similarity
    """
    if threshold is None:
        threshold = DEFAULT_DEDUP_THRESHOLD

    pairs: List[SceneSimilarity] = []
    for i in range(len(scenes) - 1):
        for j in range(i + 1, len(scenes)):
            similarity = calculate_scene_similarity(scenes[i], scenes[j])
            if similarity >= threshold:
                pairs.append(SceneSimilarity(
                    scene1_index=i,
                    scene2_index=j,
                    similarity=similarity,
                    reason=f"Scenes {i + 1} and {j + 1} are {_percent(similarity)} similar",
                ))

    pairs.sort(key=lambda pair: pair.similarity, reverse=True)
    return pairs


def get_dedup_stats(result: DedupResult) -> DedupStats:
    """Summarize a dedup result."""
    total = len(result.unique) + len(result.duplicates)
    duplicate_count = len(result.duplicates)
    if result.similarities:
        average = sum(s.similarity for s in result.similarities) / len(result.similarities)
    else:
        average = 0.0

    return DedupStats(
        total_processed=total,
        unique_count=len(result.unique),
        duplicate_count=duplicate_count,
        removal_rate=duplicate_count / total if total > 0 else 0.0,
        average_similarity=average,
    )
