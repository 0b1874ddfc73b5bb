import argparse
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from . import bootstrap
from .config import resolve_config
from .errors import TranscoderError
from .ffmpeg_runner import check_ffmpeg
from .log import configure_logging
from .queue.sqlite_backend import SQLiteQueue


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=str, help="YAML config file (default config/default.yaml)")
    parser.add_argument("--db", type=str, help="SQLite database path (queue + jobs)")
    parser.add_argument("--storage-root", type=str, help="Root directory of the local storage backend")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_rule(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="media-transcoder", description="Asynchronous media transcoding pipeline"
    )
    parser.add_argument("--log-level", type=str, default="INFO", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Submit a transcoding job")
    submit_parser.add_argument("media_ref", type=str, help="Storage key of the source video")
    submit_parser.add_argument(
        "--preset", "-p", action="append", default=[], help="Preset name (repeatable)"
    )
    submit_parser.add_argument(
        "--output", "-o", action="append", default=[],
        help="Output as JSON, e.g. '{\"format\": \"webm\", \"bitrate\": \"1M\"}' (repeatable)",
    )
    submit_parser.add_argument("--webhook", type=str, help="Completion webhook URL")
    _add_common(submit_parser)

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show one job")
    status_parser.add_argument("job_id", type=str)
    _add_common(status_parser)

    # JOBS
    jobs_parser = subparsers.add_parser("jobs", help="List jobs")
    jobs_parser.add_argument("--media-ref", type=str, help="Only jobs for this source")
    jobs_parser.add_argument("--status", type=str, help="queued, processing, completed, failed")
    jobs_parser.add_argument("--limit", type=int, default=20)
    jobs_parser.add_argument("--offset", type=int, default=0)
    _add_common(jobs_parser)

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the worker pool")
    worker_parser.add_argument("--workers", "-w", type=int, help="Number of parallel workers")
    worker_parser.add_argument(
        "--until-empty", action="store_true", help="Exit once no job is pending"
    )
    worker_parser.add_argument("--max-jobs", type=int, help="Maximum number of jobs to process")
    _add_common(worker_parser)

    # RECOVER
    recover_parser = subparsers.add_parser(
        "recover", help="Requeue running entries whose heartbeat expired"
    )
    recover_parser.add_argument("--timeout", type=float, help="Visibility timeout in seconds")
    _add_common(recover_parser)

    # QUEUE STATS
    stats_parser = subparsers.add_parser("queue-stats", help="Show queue status")
    _add_common(stats_parser)

    # PRESETS
    presets_parser = subparsers.add_parser("presets", help="List supported output presets")
    _add_common(presets_parser)

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    _add_common(serve_parser)

    # CHECK FFMPEG
    check_parser = subparsers.add_parser("check", help="Verify dependencies")
    _add_common(check_parser)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    configure_logging(args.log_level, json_format=args.json_logs)

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        config = resolve_config(cli_dict, config_path=Path(args.config) if args.config else None)
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2

    if args.command == "submit":
        outputs = [{"preset": name} for name in args.preset]
        try:
            outputs.extend(json.loads(raw) for raw in args.output)
        except json.JSONDecodeError as e:
            print(f"--output is not valid JSON: {e}", file=sys.stderr)
            return 2

        controller = bootstrap.build_controller(config)
        try:
            job = controller.submit(args.media_ref, outputs or None, args.webhook)
        except TranscoderError as e:
            print(f"{e.code}: {e.message}", file=sys.stderr)
            return 1
        _print_json(job.to_api())

    elif args.command == "status":
        job = bootstrap.build_controller(config).get(args.job_id)
        if not job:
            print(f"Job not found: {args.job_id}", file=sys.stderr)
            return 1
        _print_json(job.to_api())

    elif args.command == "jobs":
        controller = bootstrap.build_controller(config)
        try:
            jobs = controller.list_jobs(
                media_ref=args.media_ref, status=args.status, limit=args.limit, offset=args.offset
            )
        except TranscoderError as e:
            print(f"{e.code}: {e.message}", file=sys.stderr)
            return 1
        for job in jobs:
            print(f"{job.id}  {job.status.value:<10} {job.progress:>3}%  {job.media_ref}")

    elif args.command == "worker":
        pool = bootstrap.build_worker_pool(config)
        if args.until_empty or args.max_jobs:
            counts = pool.run_until_empty(max_jobs=args.max_jobs)
            _print_rule("PROCESSING SUMMARY")
            print(f"Completed:            {counts['completed']}")
            print(f"Failed:               {counts['failed']}")
            print(f"Worker errors:        {counts['errors']}")
            print("=" * 60)
        else:
            pool.start()
            try:
                pool.wait()
            except KeyboardInterrupt:
                print("\nStopping workers after their current job...")
                pool.stop(wait=True)

    elif args.command == "recover":
        queue = SQLiteQueue(config.queue.db_path)
        try:
            count = queue.requeue_stale(args.timeout or config.queue.visibility_timeout_s)
        finally:
            queue.close()
        print(f"Requeued {count} stale entries")

    elif args.command == "queue-stats":
        queue = SQLiteQueue(config.queue.db_path)
        try:
            stats = queue.stats()
        finally:
            queue.close()
        _print_rule("QUEUE STATUS")
        print(f"Pending:              {stats['pending']}")
        print(f"Running:              {stats['running']}")
        print(f"Done:                 {stats['done']}")
        print(f"Failed:               {stats['failed']}")
        print(f"Total:                {stats['total']}")
        print("=" * 60)

    elif args.command == "presets":
        for spec in bootstrap.build_controller(config).supported_outputs():
            print(
                f"{spec.id:<12} {spec.format:<5} {spec.video_codec:<11} {spec.audio_codec:<8} "
                f"{spec.resolution or '-':<10} {spec.bitrate or '-'}"
            )

    elif args.command == "serve":
        import uvicorn

        from .api import create_app

        app = create_app(bootstrap.build_controller(config))
        uvicorn.run(app, host=args.host, port=args.port, log_config=None)

    elif args.command == "check":
        print("Checking dependencies...")
        if check_ffmpeg(config.engine.ffmpeg_path):
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
