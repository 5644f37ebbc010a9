"""
Scene similarity scoring.

Pure, deterministic comparison of two scenes. The overall score is a
weighted sum of field sub-scores, each in [0, 1]:

    description  0.50  token-frequency cosine
    character    0.15  exact match, else name-list overlap
    object       0.10  exact match, else token Jaccard
    environment  0.10  exact match, else token-frequency cosine
    lighting     0.05  fraction of equal mood/source/shadows
    composition  0.05  fraction of equal angle/framing/focus
    prompt       0.05  token-frequency cosine
"""

import re
from collections import Counter
from typing import Dict, List

import numpy as np

from scene_pipeline.pipeline.entities import Scene

SIMILARITY_MIN = 0.0
SIMILARITY_MAX = 1.0

# Tokens of this length or shorter are dropped ("a", "in", "of")
MIN_TOKEN_LENGTH = 2

WEIGHT_DESCRIPTION = 0.50
WEIGHT_CHARACTER = 0.15
WEIGHT_OBJECT = 0.10
WEIGHT_ENVIRONMENT = 0.10
WEIGHT_LIGHTING = 0.05
WEIGHT_COMPOSITION = 0.05
WEIGHT_PROMPT = 0.05

LIGHTING_FIELDS = ("mood", "source", "shadows")
COMPOSITION_FIELDS = ("angle", "framing", "focus")

NO_CHARACTERS = "no characters"

_PUNCTUATION = re.compile(r"[^\w\s]")
_NAME_SEPARATORS = re.compile(r"[,;]\s*")


# =============================================================================
# Text helpers
# =============================================================================

def tokenize(text: str) -> List[str]:
    """
    Normalize text into comparison tokens.

    Lowercases, replaces punctuation with spaces, splits on whitespace and
    keeps tokens longer than two characters.
    """
    if not text:
        return []
    cleaned = _PUNCTUATION.sub(" ", text.lower())
    return [word for word in cleaned.split() if len(word) > MIN_TOKEN_LENGTH]


def jaccard_similarity(text1: str, text2: str) -> float:
    """Token-set overlap between two texts."""
    tokens1 = set(tokenize(text1))
    tokens2 = set(tokenize(text2))

    if not tokens1 and not tokens2:
        return SIMILARITY_MAX
    if not tokens1 or not tokens2:
        return SIMILARITY_MIN

    return len(tokens1 & tokens2) / len(tokens1 | tokens2)


def cosine_similarity(text1: str, text2: str) -> float:
    """
    Cosine of the token-frequency vectors of two texts.

    Args:
        text1: First text
        text2: Second text

    Returns:
        float: Similarity between 0.0 and 1.0 (1.0 when both are empty)
    """
    freq1 = Counter(tokenize(text1))
    freq2 = Counter(tokenize(text2))

    if not freq1 and not freq2:
        return SIMILARITY_MAX
    if not freq1 or not freq2:
        return SIMILARITY_MIN

    vocabulary = sorted(set(freq1) | set(freq2))
    vec1 = np.array([freq1[word] for word in vocabulary], dtype=np.float64)
    vec2 = np.array([freq2[word] for word in vocabulary], dtype=np.float64)

    norm = np.linalg.norm(vec1) * np.linalg.norm(vec2)
    if norm == 0:
        return SIMILARITY_MIN

    # Clip float drift so identical texts score exactly 1.0
    return float(min(SIMILARITY_MAX, np.dot(vec1, vec2) / norm))


def _is_blank(value: str) -> bool:
    return not value or not value.strip()


# =============================================================================
# Field comparisons
# =============================================================================

def compare_descriptions(desc1: str, desc2: str) -> float:
    return cosine_similarity(desc1, desc2)


def extract_character_names(char_field: str) -> List[str]:
    """Split a character field like "Chef Marco, Sous Chef Anna" into names."""
    parts = _NAME_SEPARATORS.split(char_field or "")
    return [
        part.strip() for part in parts
        if part.strip() and part.strip().lower() != NO_CHARACTERS
    ]


def compare_characters(char1: str, char2: str) -> float:
    """
    Compare character fields.

    Exact match scores 1.0 (this covers "No characters" on both sides);
    otherwise the score is shared names over all distinct names.
    """
    if _is_blank(char1) and _is_blank(char2):
        return SIMILARITY_MAX
    if _is_blank(char1) or _is_blank(char2):
        return SIMILARITY_MIN
    if char1.strip() == char2.strip():
        return SIMILARITY_MAX

    names1 = extract_character_names(char1)
    names2 = extract_character_names(char2)

    if not names1 and not names2:
        return SIMILARITY_MAX
    if not names1 or not names2:
        return SIMILARITY_MIN

    overlap = sum(1 for name in names1 if name in names2)
    total = len(set(names1) | set(names2))
    return overlap / total


def compare_objects(obj1: str, obj2: str) -> float:
    if _is_blank(obj1) and _is_blank(obj2):
        return SIMILARITY_MAX
    if _is_blank(obj1) or _is_blank(obj2):
        return SIMILARITY_MIN
    if obj1.strip() == obj2.strip():
        return SIMILARITY_MAX
    return jaccard_similarity(obj1, obj2)


def compare_environments(env1: str, env2: str) -> float:
    if _is_blank(env1) and _is_blank(env2):
        return SIMILARITY_MAX
    if _is_blank(env1) or _is_blank(env2):
        return SIMILARITY_MIN
    if env1.strip() == env2.strip():
        return SIMILARITY_MAX
    return cosine_similarity(env1, env2)


def _field_match_fraction(block1: Dict, block2: Dict, names) -> float:
    matches = sum(1 for name in names if block1.get(name) == block2.get(name))
    return matches / len(names)


def compare_lighting(lighting1: Dict, lighting2: Dict) -> float:
    return _field_match_fraction(lighting1 or {}, lighting2 or {}, LIGHTING_FIELDS)


def compare_composition(comp1: Dict, comp2: Dict) -> float:
    return _field_match_fraction(comp1 or {}, comp2 or {}, COMPOSITION_FIELDS)


# =============================================================================
# Scene similarity
# =============================================================================

def calculate_scene_similarity(scene1: Scene, scene2: Scene) -> float:
    """
    Overall similarity between two scenes.

    Returns:
        float: Weighted score between 0.0 (unrelated) and 1.0 (identical)
    """
    similarity = (
        compare_descriptions(scene1.description, scene2.description) * WEIGHT_DESCRIPTION
        + compare_characters(scene1.character, scene2.character) * WEIGHT_CHARACTER
        + compare_objects(scene1.object, scene2.object) * WEIGHT_OBJECT
        + compare_environments(scene1.environment, scene2.environment) * WEIGHT_ENVIRONMENT
        + compare_lighting(scene1.lighting, scene2.lighting) * WEIGHT_LIGHTING
        + compare_composition(scene1.composition, scene2.composition) * WEIGHT_COMPOSITION
        + cosine_similarity(scene1.prompt, scene2.prompt) * WEIGHT_PROMPT
    )
    return min(SIMILARITY_MAX, max(SIMILARITY_MIN, similarity))
