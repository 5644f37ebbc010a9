"""
Scene pipeline - resumable multi-phase scene generation core.

Subpackages:
- dedup: scene similarity scoring and batch deduplication
- pipeline: job entities, phase cache, progress tracking, batch loop
- storage: local tier, remote tier client, retry queue, dual-tier synchronizer
- api: remote job store server (FastAPI)
- infra: configuration, paths, logging, events
"""

__version__ = "1.0.0"
