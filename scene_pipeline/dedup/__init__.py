"""
Deduplication module - scene similarity scoring and batch dedup.
"""

from .similarity import (
    calculate_scene_similarity,
    compare_characters,
    compare_descriptions,
    compare_environments,
    compare_objects,
    cosine_similarity,
    jaccard_similarity,
    tokenize,
)
from .scene_dedup import (
    DedupResult,
    DedupStats,
    SceneSimilarity,
    deduplicate_scenes,
    find_similar_scenes,
    get_dedup_stats,
)

__all__ = [
    # similarity
    "calculate_scene_similarity",
    "compare_characters",
    "compare_descriptions",
    "compare_environments",
    "compare_objects",
    "cosine_similarity",
    "jaccard_similarity",
    "tokenize",
    # batch dedup
    "DedupResult",
    "DedupStats",
    "SceneSimilarity",
    "deduplicate_scenes",
    "find_similar_scenes",
    "get_dedup_stats",
]
