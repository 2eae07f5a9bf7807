"""CLI entrypoint for the feedback insight pipeline."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import yaml

from insight_pipeline import __version__
from insight_pipeline.config import RunConfig, Settings
from insight_pipeline.errors import ConfigError, RunNotFoundError
from insight_pipeline.events import to_sse
from insight_pipeline.io import (
    FeedbackDatasetError,
    load_feedback_jsonl,
    save_json,
    summarize_feedback,
)
from insight_pipeline.mock_data import (
    KeywordAnalysisClient,
    generate_mock_feedback,
    write_mock_feedback,
)
from insight_pipeline.observability import tracing_status
from insight_pipeline.pipeline import PipelineOrchestrator
from insight_pipeline.runs import discover_run_summaries, inspect_run, prune_runs
from insight_pipeline.schemas import (
    EventType,
    PipelineEvent,
    PipelineResult,
    ProductArea,
    RunStatus,
)
from insight_pipeline.store import JsonlRunStore

logger = logging.getLogger(__name__)

RESULT_FILENAME = "result.json"

_EXIT_CODES = {
    RunStatus.COMPLETED: 0,
    RunStatus.FAILED: 1,
    RunStatus.CANCELLED: 2,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="insight-pipeline",
        description="Turn customer feedback into ranked, evidence-linked product insights",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=str,
        default="configs/default.yaml",
        help="Path to YAML config file (default: configs/default.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (defaults to configured log_level).",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("info", help="Show current configuration")

    run_parser = sub.add_parser("run", help="Run the pipeline over a feedback JSONL file")
    run_parser.add_argument("--input", type=str, required=True, help="Feedback JSONL path.")
    run_parser.add_argument("--company-id", type=str, required=True)
    run_parser.add_argument("--product-id", type=str, required=True)
    run_parser.add_argument(
        "--product-areas",
        type=str,
        default=None,
        help="Optional YAML/JSON file listing product areas (id, name, keywords).",
    )
    run_parser.add_argument(
        "--mock",
        action="store_true",
        help="Use the deterministic offline analysis client instead of OpenAI.",
    )
    run_parser.add_argument(
        "--stream",
        action="store_true",
        help="Print run events as they happen.",
    )
    run_parser.add_argument("--success-threshold", type=float, default=None)
    run_parser.add_argument("--min-cluster-size", type=int, default=None)
    run_parser.add_argument(
        "--include-singletons",
        action="store_true",
        help="Keep items that did not reach min cluster size as one unclustered bucket.",
    )
    run_parser.add_argument(
        "--runs-root",
        type=str,
        default=None,
        help="Optional runs root path (defaults to configured output_dir).",
    )
    run_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full result as JSON.",
    )

    events_parser = sub.add_parser("events", help="Replay the stored event log of one run.")
    events_parser.add_argument("run_id", type=str)
    events_parser.add_argument(
        "--after",
        type=int,
        default=0,
        help="Only events with a sequence number greater than this.",
    )
    events_parser.add_argument(
        "--sse",
        action="store_true",
        help="Print events as server-sent-events frames.",
    )
    events_parser.add_argument("--runs-root", type=str, default=None)

    runs_parser = sub.add_parser("runs", help="List, inspect, or prune stored runs.")
    runs_sub = runs_parser.add_subparsers(dest="runs_command")

    list_parser = runs_sub.add_parser("list", help="List runs under the runs root.")
    list_parser.add_argument("--runs-root", type=str, default=None)
    list_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum run rows to print (default: 20).",
    )
    list_parser.add_argument("--json", action="store_true", help="Print list output as JSON.")

    inspect_parser = runs_sub.add_parser("inspect", help="Inspect one run manifest.")
    inspect_parser.add_argument("run_id", type=str)
    inspect_parser.add_argument("--runs-root", type=str, default=None)
    inspect_parser.add_argument("--json", action="store_true", help="Print output as JSON.")

    prune_parser = runs_sub.add_parser(
        "prune",
        help="Delete old run directories with safe dry-run defaults.",
    )
    prune_parser.add_argument("--runs-root", type=str, default=None)
    prune_parser.add_argument(
        "--keep-last",
        type=int,
        default=20,
        help="Always keep this many newest runs (default: 20).",
    )
    prune_parser.add_argument(
        "--max-age-days",
        type=int,
        default=None,
        help="Additionally prune runs older than this many days.",
    )
    prune_parser.add_argument(
        "--yes",
        action="store_true",
        help="Apply deletion. Without this flag, command is dry-run only.",
    )
    prune_parser.add_argument("--json", action="store_true", help="Print result as JSON.")

    mock_parser = sub.add_parser("mock-feedback", help="Generate synthetic feedback JSONL.")
    mock_parser.add_argument("--count", type=int, default=60)
    mock_parser.add_argument("--seed", type=int, default=7)
    mock_parser.add_argument("--product-id", type=str, default="prod-demo")
    mock_parser.add_argument(
        "--output",
        type=str,
        default="data/mock/feedback.jsonl",
        help="Output JSONL path.",
    )

    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _resolve_runs_root(settings: Settings, runs_root_arg: str | None) -> Path:
    """Resolve runs root from optional CLI argument."""

    if runs_root_arg:
        return Path(runs_root_arg).expanduser()
    return settings.output_dir


def _print_json(payload: dict | list[dict]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=True))


def _format_event(event: PipelineEvent) -> str:
    payload = event.payload
    stage = str(event.stage) if event.stage is not None else "-"
    progress = payload.get("progress")
    progress_text = f"{progress:6.1%}" if isinstance(progress, int | float) else "      "
    detail = ""
    if event.type in {EventType.STAGE_PROGRESS, EventType.ERROR}:
        detail = f"{payload.get('itemId')} {payload.get('itemStatus')}"
        if event.type == EventType.ERROR:
            detail += f" ({payload.get('reason')})"
    elif event.type in {EventType.WARNING, EventType.PIPELINE_FAILED}:
        detail = str(payload.get("message") or payload.get("error") or "")
    return f"  #{event.sequence_number:<4} {progress_text} {event.type:<18} {stage:<18} {detail}"


def _load_product_areas(path: str | None) -> list[ProductArea]:
    if not path:
        return []
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or []
    if isinstance(raw, dict):
        raw = raw.get("product_areas", raw.get("productAreas", []))
    return [ProductArea.model_validate(entry) for entry in raw]


def cmd_info(settings: Settings) -> None:
    tracing = tracing_status(settings)
    print(f"insight-pipeline v{__version__}")
    print(f"  OpenAI model:       {settings.openai_model}")
    print(f"  OpenAI base URL:    {settings.openai_base_url or '(default OpenAI)'}")
    print(f"  OpenAI key set:     {bool(settings.openai_api_key)}")
    print(f"  Call timeout (s):   {settings.capability_timeout_seconds}")
    print(f"  Call max retries:   {settings.capability_max_retries}")
    print(
        "  Backoff:            "
        f"base={settings.capability_backoff_base_seconds}s "
        f"factor={settings.capability_backoff_factor} "
        f"jitter=±{settings.capability_backoff_jitter:.0%}"
    )
    print(f"  Max in-flight calls: {settings.capability_max_in_flight}")
    print(f"  Success threshold:  {settings.success_threshold}")
    print(
        "  Stage concurrency:  "
        f"enrichment={settings.enrichment_max_concurrency} "
        f"clustering={settings.clustering_max_concurrency} "
        f"insights={settings.insight_max_concurrency} "
        f"scoring={settings.scoring_max_concurrency}"
    )
    print(f"  Min cluster size:   {settings.min_cluster_size}")
    print(f"  Include singletons: {settings.include_singletons}")
    print(f"  Volume saturation:  {settings.volume_saturation_point}")
    print(f"  Half-life (days):   {settings.half_life_days}")
    print(f"  Store backend:      {settings.store_backend}")
    print(f"  Output dir:         {settings.output_dir}")
    print(f"  Retained runs:      {settings.retain_finished_runs}")
    print(f"  LangSmith tracing:  {tracing.enabled}")
    print(f"  LangSmith endpoint: {tracing.endpoint or '(not set)'}")
    print(f"  LangSmith project:  {tracing.project or '(not set)'}")
    print(f"  LangSmith key set:  {tracing.api_key_present}")


async def _execute_run(
    orchestrator: PipelineOrchestrator,
    config: RunConfig,
    *,
    stream: bool,
) -> PipelineResult:
    run_id = await orchestrator.start(config)
    print(f"Run {run_id} started.")
    if stream:
        async for event in orchestrator.stream(run_id):
            print(_format_event(event))
    return await orchestrator.wait(run_id)


def _print_result(result: PipelineResult) -> None:
    run = result.run
    print("Run finished")
    print(f"  Run ID:        {run.id}")
    print(f"  Status:        {run.status}")
    print(f"  Input items:   {run.input_count}")
    print(f"  Clusters:      {len(result.clusters)}")
    print(f"  Insights:      {len(result.insights)}")
    error_counts = run.error_counts()
    if error_counts:
        print("  Item errors:   " + ", ".join(f"{k}={v}" for k, v in error_counts.items()))
    if run.error_message:
        print(f"  Error stage:   {run.error_stage}")
        print(f"  Error:         {run.error_message}")
    for rank, insight in enumerate(result.insights[:10], start=1):
        print(
            f"  {rank:>2}. [{insight.score:5.1f} {insight.priority}] {insight.title} "
            f"({insight.severity}, {len(insight.evidence_item_ids)} evidence)"
        )


def cmd_run(settings: Settings, args: argparse.Namespace) -> None:
    """Load feedback, run the pipeline once, and persist the result next to the run log."""

    try:
        items = load_feedback_jsonl(args.input)
    except FeedbackDatasetError as exc:
        print(f"Input loading failed: {exc}")
        sys.exit(1)
    summary = summarize_feedback(items)
    print(f"Loaded {summary.feedback_count} feedback items ({summary.unique_user_count} users).")

    overrides: dict = {}
    if args.success_threshold is not None:
        overrides["success_threshold"] = args.success_threshold
    if args.min_cluster_size is not None or args.include_singletons:
        overrides["clustering"] = {
            "min_cluster_size": (
                args.min_cluster_size
                if args.min_cluster_size is not None
                else settings.min_cluster_size
            ),
            "include_singletons": args.include_singletons or settings.include_singletons,
        }

    try:
        config = RunConfig.from_settings(
            settings,
            company_id=args.company_id,
            product_id=args.product_id,
            items=items,
            product_areas=_load_product_areas(args.product_areas),
            **overrides,
        )
    except ConfigError as exc:
        print(f"Run configuration error: {exc}")
        sys.exit(1)

    runs_root = _resolve_runs_root(settings, args.runs_root)
    store = JsonlRunStore(runs_root)
    client = KeywordAnalysisClient() if args.mock else None
    orchestrator = PipelineOrchestrator.from_settings(settings, client=client, store=store)

    result = asyncio.run(_execute_run(orchestrator, config, stream=args.stream))
    result_path = save_json(store.run_root(result.run.id) / RESULT_FILENAME, result.to_wire())

    if args.json:
        _print_json(result.to_wire())
    else:
        _print_result(result)
        print(f"  Result saved:  {result_path}")
    sys.exit(_EXIT_CODES.get(result.run.status, 1))


def cmd_events(settings: Settings, args: argparse.Namespace) -> None:
    """Replay a stored run's events in sequence order."""

    store = JsonlRunStore(_resolve_runs_root(settings, args.runs_root))
    try:
        events = store.read_events(args.run_id, after_sequence=args.after)
    except RunNotFoundError as exc:
        print(f"Event replay failed: {exc}")
        sys.exit(1)

    for event in events:
        if args.sse:
            sys.stdout.write(to_sse(event))
        else:
            print(_format_event(event))


def cmd_list_runs(settings: Settings, args: argparse.Namespace) -> None:
    runs_root = _resolve_runs_root(settings, args.runs_root)
    summaries = discover_run_summaries(runs_root)
    payload = [item.to_dict() for item in summaries[: max(0, args.limit)]]
    if args.json:
        _print_json(payload)
        return

    print(f"Runs under: {runs_root}")
    print(f"Showing: {len(payload)} of {len(summaries)}")
    for item in payload:
        print(
            "  - "
            f"{item['run_id']} | status={item['status']} | "
            f"updated={item['updated_at_utc']} | "
            f"input={item['input_count']} | output={item['output_count']} | "
            f"events={item['event_count']}"
        )


def cmd_inspect_run(settings: Settings, args: argparse.Namespace) -> None:
    runs_root = _resolve_runs_root(settings, args.runs_root)
    try:
        payload = inspect_run(runs_root, args.run_id)
    except ValueError as exc:
        print(f"Run inspection failed: {exc}")
        sys.exit(1)

    if args.json:
        _print_json(payload)
        return

    summary = payload["summary"]
    print("Run inspection")
    print(f"  Run ID:        {summary['run_id']}")
    print(f"  Run root:      {summary['run_root']}")
    print(f"  Status:        {summary['status']}")
    print(f"  Company:       {summary['company_id']}")
    print(f"  Product:       {summary['product_id']}")
    print(f"  Created:       {summary['created_at_utc']}")
    print(f"  Updated:       {summary['updated_at_utc']}")
    print(f"  Input items:   {summary['input_count']}")
    print(f"  Insights:      {summary['output_count']}")
    print(f"  Events:        {summary['event_count']}")
    if summary["error_stage"]:
        print(f"  Error stage:   {summary['error_stage']}")
    for stage, count in sorted(payload["error_counts"].items()):
        print(f"  Errors [{stage}]: {count}")


def cmd_prune_runs(settings: Settings, args: argparse.Namespace) -> None:
    """Prune old runs, with dry-run default safety."""

    runs_root = _resolve_runs_root(settings, args.runs_root)
    dry_run = not bool(args.yes)
    try:
        result = prune_runs(
            runs_root,
            keep_last=args.keep_last,
            max_age_days=args.max_age_days,
            dry_run=dry_run,
        )
    except ValueError as exc:
        print(f"Run pruning configuration error: {exc}")
        sys.exit(1)

    if args.json:
        _print_json(result)
        if result["error_count"] > 0:
            sys.exit(1)
        return

    mode = "dry-run" if dry_run else "applied"
    print(f"Run prune ({mode})")
    print(f"  Runs root:         {result['runs_root']}")
    print(f"  Total runs:        {result['total_runs']}")
    print(f"  Planned deletions: {result['planned_count']}")
    print(f"  Deleted:           {result['deleted_count']}")
    print(f"  Skipped active:    {result['skipped_active_count']}")
    print(f"  Errors:            {result['error_count']}")
    rows = result["planned"] if dry_run else result["deleted"]
    for item in rows[:20]:
        print(f"    - {item['run_id']} ({item['run_root']})")
    if dry_run:
        print("  Re-run with --yes to apply deletions.")
    if result["error_count"] > 0:
        sys.exit(1)


def cmd_mock_feedback(args: argparse.Namespace) -> None:
    records = generate_mock_feedback(count=args.count, seed=args.seed, product_id=args.product_id)
    out_path = write_mock_feedback(args.output, records)
    print(f"Generated {len(records)} mock feedback items at {out_path}")


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    settings = Settings.from_yaml(args.config)
    configure_logging(args.log_level or settings.log_level)

    if args.command == "info":
        cmd_info(settings)
    elif args.command == "run":
        cmd_run(settings, args)
    elif args.command == "events":
        cmd_events(settings, args)
    elif args.command == "runs" and args.runs_command == "list":
        cmd_list_runs(settings, args)
    elif args.command == "runs" and args.runs_command == "inspect":
        cmd_inspect_run(settings, args)
    elif args.command == "runs" and args.runs_command == "prune":
        cmd_prune_runs(settings, args)
    elif args.command == "mock-feedback":
        cmd_mock_feedback(args)
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
