"""
Pytest configuration and shared fixtures.
"""

import logging

import pytest

from scene_pipeline.infra.events import JobEventBus
from scene_pipeline.pipeline.entities import Job, JobStatus, Scene
from scene_pipeline.storage.local_store import JsonFileStore

# Fixed epoch for deterministic tests (2026-01-01T00:00:00Z)
FIXED_TIME = 1767225600.0


class MockClock:
    """
    Mock clock for deterministic time control.

    Starts at a fixed epoch and advances only when explicitly ticked.
    """

    def __init__(self, start: float = FIXED_TIME):
        self._current = start

    def __call__(self) -> float:
        return self._current

    def advance(self, seconds: float) -> None:
        self._current += seconds


def make_scene(
    description: str,
    character: str = "No characters",
    obj: str = "",
    environment: str = "",
    prompt: str = "",
    lighting=None,
    composition=None,
) -> Scene:
    """Scene with only the fields similarity looks at."""
    return Scene(
        description=description,
        character=character,
        object=obj,
        prompt=prompt,
        visual_specs={"environment": environment} if environment else {},
        lighting=lighting or {},
        composition=composition or {},
    )


def numbered_scenes(start: int, count: int):
    """Scenes that are mutually dissimilar (distinct description vocabulary)."""
    topics = [
        "harbor fishermen mending torn nets beside wooden boats",
        "desert caravan crossing golden dunes under blazing noon",
        "library scholars reading ancient manuscripts by candlelight",
        "mountain climbers roped together scaling icy northern ridge",
        "orchestra musicians tuning violins before evening concert",
        "children flying colorful kites across windy meadow hills",
        "blacksmith hammering glowing iron upon heavy anvil",
        "astronaut floating outside orbital station repairing panels",
        "farmers harvesting ripe pumpkins into wooden wagons",
        "detective examining muddy footprints near abandoned warehouse",
        "dancers spinning beneath paper lanterns during festival",
        "surgeon team operating under bright theatre lamps",
        "monks sweeping temple courtyard covered with maple leaves",
        "pilots checking cockpit instruments before dawn takeoff",
        "potter shaping wet clay vases on spinning wheel",
        "divers exploring coral reef teeming with tropical fish",
    ]
    scenes = []
    for i in range(start, start + count):
        topic = topics[i % len(topics)]
        scenes.append(make_scene(
            description=f"{topic} number{i}",
            character="No characters",
            obj=f"object{i}",
            environment=f"setting{i} place{i}",
            prompt=f"prompt{i} {topic}",
        ))
    return scenes


def make_job(
    job_id: str = "job-00000001",
    status: JobStatus = JobStatus.COMPLETED,
    scene_count: int = 2,
    timestamp: float = FIXED_TIME,
    source_id: str = "src-1",
    **kwargs,
) -> Job:
    return Job(
        job_id=job_id,
        source_id=source_id,
        source_url=f"https://example.com/{source_id}",
        scenes=numbered_scenes(0, scene_count),
        status=status,
        timestamp=timestamp,
        **kwargs,
    )


@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def store(tmp_path):
    return JsonFileStore(tmp_path / "local_store")


@pytest.fixture
def events():
    return JobEventBus()


@pytest.fixture(autouse=True)
def restore_package_logger():
    """Undo setup_logging side effects so caplog keeps seeing package logs."""
    logger = logging.getLogger("scene_pipeline")
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    client_levels = {name: logging.getLogger(name).level for name in ("httpx", "httpcore")}
    yield
    for name, client_level in client_levels.items():
        logging.getLogger(name).setLevel(client_level)
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate
