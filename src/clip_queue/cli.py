import argparse
import json
import logging
import sys

from pydantic import ValidationError

from . import config as config_lib
from . import runner
from .queue import QueueError
from .queue.manager import job_status


def _add_common(parser):
    parser.add_argument("--db", type=str, help="Shared job store path (overrides config)")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )


def _fail(message):
    print(f"❌ {message}")
    sys.exit(1)


def _read_payload(path):
    try:
        if path == "-":
            return json.load(sys.stdin)
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        _fail(f"Cannot read payload from {path}: {e}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="clip-queue", description="Persistent multi-instance clip job queue"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Submit a clip job")
    submit_parser.add_argument(
        "--payload", "-p", type=str, default="-", help="Payload JSON file ('-' for stdin)"
    )
    submit_parser.add_argument(
        "--lookup-hash", type=str, help="Job key (computed from the payload if omitted)"
    )
    submit_parser.add_argument("--priority", type=int, default=0, help="Higher runs first")
    submit_parser.add_argument("--max-attempts", type=int, help="Retry limit for this job")
    _add_common(submit_parser)

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show one job")
    status_parser.add_argument("lookup_hash", type=str, help="Job key")
    _add_common(status_parser)

    # STATS
    stats_parser = subparsers.add_parser("stats", help="Show queue counts")
    _add_common(stats_parser)

    # HISTORY
    history_parser = subparsers.add_parser("history", help="Show a job's state transitions")
    history_parser.add_argument("lookup_hash", type=str, help="Job key")
    _add_common(history_parser)

    # RECLAIM
    reclaim_parser = subparsers.add_parser("reclaim", help="Run one orphan reclaim sweep")
    _add_common(reclaim_parser)

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run a queue instance")
    worker_parser.add_argument(
        "--pipeline",
        type=str,
        required=True,
        help="Pipeline factory as module:callable (called with the config)",
    )
    worker_parser.add_argument("--max-concurrent", "-w", type=int, help="Parallel jobs")
    worker_parser.add_argument("--poll-interval", type=float, help="Seconds between claims")
    worker_parser.add_argument("--instance-id", type=str, help="Instance identity")
    worker_parser.add_argument("--results-db", type=str, help="Publish outcomes to this file")
    worker_parser.add_argument(
        "--drain", action="store_true", help="Exit once nothing is left to claim"
    )
    _add_common(worker_parser)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        conf = config_lib.resolve_config(cli_dict)
    except ValidationError as e:
        _fail(f"Invalid configuration: {e}")

    try:
        if args.command == "submit":
            payload = _read_payload(args.payload)
            result = runner.submit_payload(
                conf,
                payload,
                lookup_hash=args.lookup_hash,
                priority=args.priority,
                max_attempts=args.max_attempts,
            )
            print(f"Job {result.lookup_hash}: {result.status.value}")

        elif args.command == "status":
            store = runner.open_store(conf)
            view = job_status(store, args.lookup_hash)
            store.close()
            if view is None:
                _fail(f"Job {args.lookup_hash} not found")

            print(f"Job:        {view.lookup_hash}")
            print(f"Status:     {view.status.value} ({view.estimated_wait})")
            print(f"Attempts:   {view.attempts}/{view.max_attempts}")
            if view.last_error:
                print(f"Last error: {view.last_error}")
            for entry in view.error_history:
                print(f"  #{entry.attempt} {entry.timestamp.isoformat()} {entry.error}")

        elif args.command == "stats":
            store = runner.open_store(conf)
            counts = store.count_by_status()
            store.close()
            print("\n" + "=" * 60)
            print("QUEUE STATUS")
            print("=" * 60)
            print(f"Queued:               {counts['queued']}")
            print(f"Processing:           {counts['processing']}")
            print(f"Completed:            {counts['completed']}")
            print(f"Failed:               {counts['failed']}")
            print(f"Total:                {sum(counts.values())}")
            print("=" * 60)

        elif args.command == "history":
            store = runner.open_store(conf)
            transitions = store.get_transitions(args.lookup_hash)
            store.close()
            if not transitions:
                _fail(f"No history for job {args.lookup_hash}")
            for t in transitions:
                line = f"{t.timestamp.isoformat()}  {t.from_state or '-':>10} -> {t.to_state:<10}"
                if t.instance_id:
                    line += f"  [{t.instance_id}]"
                if t.error_snippet:
                    line += f"  {t.error_snippet}"
                print(line)

        elif args.command == "reclaim":
            reclaimed = runner.reclaim_once(conf)
            for job in reclaimed:
                print(f"  ↺ {job.lookup_hash} (from {job.previous_instance_id}) -> {job.status.value}")
            print(f"Reclaimed {len(reclaimed)} orphaned jobs")

        elif args.command == "worker":
            try:
                pipeline = runner.load_pipeline(args.pipeline, conf)
            except ValueError as e:
                _fail(str(e))

            summary = runner.run_worker(
                conf, pipeline, drain=args.drain, instance_id=args.instance_id
            )
            counts = summary["counts"]
            print("\n" + "=" * 60)
            print("INSTANCE SUMMARY")
            print("=" * 60)
            print(f"Instance:             {summary['instance_id']}")
            print(f"Released on shutdown: {summary['released']}")
            print(f"Queued:               {counts['queued']}")
            print(f"Completed:            {counts['completed']}")
            print(f"Failed:               {counts['failed']}")
            print("=" * 60)

    except QueueError as e:
        _fail(str(e))


if __name__ == "__main__":
    main()
