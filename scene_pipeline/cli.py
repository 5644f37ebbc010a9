"""
Scene Pipeline CLI.

Commands:
    serve                     Run the remote job store server
    jobs list                 List jobs from both tiers
    jobs show JOB_ID          Print one job as JSON
    jobs delete JOB_ID        Delete a job (local now, remote best effort)
    jobs clear                Delete every job
    jobs sync JOB_ID          Move a local job to the remote tier
    jobs fix-orphaned         Complete in_progress jobs that already have scenes
    dedup analyze FILE        Report similar scene pairs in a JSON scene list
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from scene_pipeline.dedup.scene_dedup import find_similar_scenes
from scene_pipeline.infra.config import Settings
from scene_pipeline.infra.logging_config import setup_logging
from scene_pipeline.pipeline.entities import Scene
from scene_pipeline.storage.synchronizer import JobSynchronizer, create_job_synchronizer

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="scene_pipeline", description="Scene Pipeline CLI")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (default: LOG_LEVEL env or INFO)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the remote job store server")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve_parser.add_argument("--reload", action="store_true", default=False, help="Auto-reload on code changes")

    # jobs command
    jobs_parser = subparsers.add_parser("jobs", help="Inspect and manage cached jobs")
    jobs_parser.set_defaults(print_help=jobs_parser.print_help)
    jobs_sub = jobs_parser.add_subparsers(dest="jobs_command", help="Job commands")

    list_parser = jobs_sub.add_parser("list", help="List jobs from both tiers")
    list_parser.add_argument("--json", action="store_true", default=False, help="Print JSON")
    list_parser.add_argument("--source", type=str, default=None, help="Only jobs for this source id")

    show_parser = jobs_sub.add_parser("show", help="Print one job as JSON")
    show_parser.add_argument("job_id", type=str)

    delete_parser = jobs_sub.add_parser("delete", help="Delete a job")
    delete_parser.add_argument("job_id", type=str)

    jobs_sub.add_parser("clear", help="Delete every job")

    sync_parser = jobs_sub.add_parser("sync", help="Move a local job to the remote tier")
    sync_parser.add_argument("job_id", type=str)

    jobs_sub.add_parser("fix-orphaned", help="Complete in_progress jobs that already have scenes")

    # dedup command
    dedup_parser = subparsers.add_parser("dedup", help="Scene similarity tools")
    dedup_parser.set_defaults(print_help=dedup_parser.print_help)
    dedup_sub = dedup_parser.add_subparsers(dest="dedup_command", help="Dedup commands")

    analyze_parser = dedup_sub.add_parser("analyze", help="Report similar scene pairs")
    analyze_parser.add_argument("file", type=Path, help="JSON file: a scene list or a job with 'scenes'")
    analyze_parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Similarity threshold 0.0-1.0 (default: SCENE_DEDUP_THRESHOLD or 0.75)"
    )

    return parser


# =============================================================================
# serve
# =============================================================================

def run_serve(args, settings: Settings) -> int:
    import uvicorn

    if not settings.accepted_database_keys:
        logger.warning("[CLI] DATABASE_KEYS is empty; every /jobs request will be rejected")

    logger.info(f"[CLI] Job store listening on {args.host}:{args.port}")
    uvicorn.run(
        "scene_pipeline.api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )
    return 0


# =============================================================================
# jobs
# =============================================================================

async def _run_jobs_command(args, sync: JobSynchronizer) -> int:
    try:
        if args.jobs_command == "list":
            infos = await sync.list_jobs()
            if args.source:
                infos = [info for info in infos if info.source_id == args.source]
            if args.json:
                print(json.dumps([info.to_dict() for info in infos], ensure_ascii=False, indent=2))
                return 0
            if not infos:
                print("No jobs.")
                return 0
            for info in infos:
                print(
                    f"{info.job_id}  {info.status.value:<11}  {info.scene_count:>4} scenes  "
                    f"[{info.storage_source}]  {info.source_url}"
                )
            return 0

        if args.jobs_command == "show":
            job, source = await sync.get_job(args.job_id)
            if job is None:
                print(f"Job not found: {args.job_id}", file=sys.stderr)
                return 1
            print(json.dumps({"source": source, "job": job.to_dict()}, ensure_ascii=False, indent=2))
            return 0

        if args.jobs_command == "delete":
            await sync.delete_job(args.job_id)
            print(f"Deleted {args.job_id}")
            return 0

        if args.jobs_command == "clear":
            await sync.clear_all()
            print("Cleared all jobs")
            return 0

        if args.jobs_command == "sync":
            if await sync.sync_job_to_cloud(args.job_id):
                print(f"Moved {args.job_id} to cloud")
                return 0
            print(f"Sync failed for {args.job_id}", file=sys.stderr)
            return 1

        if args.jobs_command == "fix-orphaned":
            fixed = await sync.fix_orphaned_jobs()
            print(f"Fixed {fixed} orphaned jobs")
            return 0
    finally:
        await sync.aclose()

    return 1


def run_jobs(args, settings: Settings) -> int:
    if not args.jobs_command:
        args.print_help()
        return 1
    sync = create_job_synchronizer(settings)
    return asyncio.run(_run_jobs_command(args, sync))


# =============================================================================
# dedup
# =============================================================================

def load_scenes(path: Path) -> List[Scene]:
    """
    Read scenes from a JSON file.

    Raises:
        ValueError: If the file holds neither a list nor an object with "scenes"
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("scenes")
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a scene list or an object with 'scenes'")
    return [Scene.from_dict(item) for item in data]


def run_dedup(args, settings: Settings) -> int:
    if args.dedup_command != "analyze":
        args.print_help()
        return 1

    threshold = args.threshold if args.threshold is not None else settings.dedup_threshold
    if not 0.0 <= threshold <= 1.0:
        print(f"Threshold must be between 0.0 and 1.0, got {threshold}", file=sys.stderr)
        return 2

    try:
        scenes = load_scenes(args.file)
    except (OSError, ValueError) as e:
        print(f"Cannot read scenes: {e}", file=sys.stderr)
        return 1

    pairs = find_similar_scenes(scenes, threshold)
    print(f"{len(scenes)} scenes, {len(pairs)} similar pairs at threshold {threshold:.2f}")
    for pair in pairs:
        print(f"  {pair.reason}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    setup_logging(settings, log_level=args.log_level)

    if args.command == "serve":
        return run_serve(args, settings)
    if args.command == "jobs":
        return run_jobs(args, settings)
    if args.command == "dedup":
        return run_dedup(args, settings)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
