"""CLI entrypoint for the session classifier."""

import argparse
import logging
import sys
from pathlib import Path

from session_classifier import __version__
from session_classifier.config import Settings
from session_classifier.io import (
    RunLockError,
    SessionDatasetError,
    ensure_directory,
    load_sessions_jsonl,
    run_lock,
    save_json,
    validate_sessions_jsonl,
)
from session_classifier.mock_data import generate_mock_sessions, write_mock_sessions
from session_classifier.models import HttpSessionSource, InMemorySessionSource, SessionSource
from session_classifier.pipeline import (
    AnalysisRunConfig,
    AnalysisRunResult,
    InsufficientSessionsError,
    ServiceRegistry,
    SessionClassificationService,
    TokenBudgetEstimator,
    generate_run_id,
    get_optimal_configuration,
    save_run_artifacts,
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="session-classifier",
        description="Sample bot sessions and classify them with an LLM in parallel streams",
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
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for pipeline modules.",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("info", help="Show current configuration")

    validate_parser = sub.add_parser(
        "validate-input",
        help="Validate a session JSONL export.",
    )
    validate_parser.add_argument("--input", type=str, default="", help="Session JSONL path.")
    validate_parser.add_argument(
        "--max-errors",
        type=int,
        default=100,
        help="Maximum number of line-level errors to keep in the report.",
    )
    validate_parser.add_argument(
        "--report-json",
        type=str,
        default="",
        help="Optional path to write the full report as JSON.",
    )

    estimate_parser = sub.add_parser(
        "estimate",
        help="Estimate tokens, cost and parallel layout for a session JSONL export.",
    )
    estimate_parser.add_argument("--input", type=str, default="", help="Session JSONL path.")
    estimate_parser.add_argument("--model", type=str, default="", help="Model id override.")

    mock_parser = sub.add_parser("generate-mock", help="Write synthetic sessions as JSONL.")
    mock_parser.add_argument("--count", type=int, default=200, help="Number of sessions.")
    mock_parser.add_argument("--seed", type=int, default=7, help="Deterministic seed.")
    mock_parser.add_argument(
        "--output",
        type=str,
        default="data/mock/sessions.jsonl",
        help="Output JSONL path.",
    )

    run_parser = sub.add_parser("run", help="Sample and classify sessions")
    run_parser.add_argument(
        "--start-date",
        type=str,
        required=True,
        help="Local (US Eastern) start date, YYYY-MM-DD.",
    )
    run_parser.add_argument(
        "--start-time",
        type=str,
        required=True,
        help="Local (US Eastern) start time, HH:MM.",
    )
    run_parser.add_argument("--count", type=int, required=True, help="Sessions to sample.")
    run_parser.add_argument(
        "--source",
        type=str,
        default="jsonl",
        choices=["jsonl", "http"],
        help="Where to read sessions from.",
    )
    run_parser.add_argument(
        "--input",
        type=str,
        default="",
        help="Session JSONL path when --source=jsonl.",
    )
    run_parser.add_argument("--model", type=str, default="", help="Model id override.")
    run_parser.add_argument("--bot-id", type=str, default="default", help="Tenant (bot) id.")
    run_parser.add_argument(
        "--context",
        type=str,
        default="",
        help="Additional business context appended to classification prompts.",
    )
    run_parser.add_argument(
        "--run-id",
        type=str,
        default="",
        help="Run id; a new one is generated when omitted.",
    )
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), format=LOG_FORMAT)


def cmd_info(settings: Settings) -> None:
    print(f"session-classifier v{__version__}")
    print(f"  OpenAI model:       {settings.openai_model}")
    print(f"  Effective model:    {settings.resolved_openai_model()}")
    print(f"  OpenAI base URL:    {settings.resolved_openai_base_url() or '(default OpenAI)'}")
    print(f"  Key source:         {settings.resolved_openai_key_source()}")
    print(f"  Temperature:        {settings.openai_temperature}")
    print(f"  Client retries:     {settings.client_max_retries}")
    print(f"  Session API:        {settings.session_api_base_url or '(not set)'}")
    print(f"  Min sessions:       {settings.min_session_count}")
    print(f"  Streams:            {settings.parallel_stream_count}")
    print(f"  Sessions/stream:    {settings.sessions_per_stream}")
    print(f"  Retry attempts:     {settings.retry_attempts}")
    print(f"  Sync frequency:     {settings.sync_frequency}")
    print(f"  Conflict resolver:  {settings.conflict_resolution_enabled}")
    print(f"  Discovery:          {settings.discovery_enabled}")
    print(f"  Random seed:        {settings.random_seed}")
    print(f"  Input file:         {settings.input_sessions_path}")
    print(f"  Output dir:         {settings.output_dir}")


def _resolve_input_path(settings: Settings, args: argparse.Namespace) -> Path:
    if args.input:
        return Path(args.input).expanduser()
    return settings.input_sessions_path


def cmd_validate_input(settings: Settings, args: argparse.Namespace) -> None:
    input_path = _resolve_input_path(settings, args)
    try:
        report = validate_sessions_jsonl(input_path, max_errors=args.max_errors)
    except SessionDatasetError as exc:
        print(f"Input validation failed: {exc}")
        sys.exit(1)
    except ValueError as exc:
        print(f"Input validation configuration error: {exc}")
        sys.exit(1)

    print("Input validation complete.")
    print(f"  Input path:        {report.input_path}")
    print(f"  Valid sessions:    {report.valid_session_count}")
    print(f"  Invalid lines:     {report.invalid_line_count}")
    print(f"  Duplicate IDs:     {report.duplicate_session_id_count}")
    print(f"  Unique users:      {report.summary.unique_user_count}")
    print(f"  Total messages:    {report.summary.message_count}")

    if args.report_json:
        report_path = save_json(args.report_json, report.to_dict())
        print(f"  Report JSON:       {report_path}")

    if report.is_valid:
        return

    for item in report.errors[:5]:
        print(f"    - line {item.line_number} [{item.code}] {item.message}")
    sys.exit(1)


def cmd_estimate(settings: Settings, args: argparse.Namespace) -> None:
    model_id = args.model or settings.resolved_openai_model()
    try:
        sessions = load_sessions_jsonl(_resolve_input_path(settings, args))
    except SessionDatasetError as exc:
        print(f"Could not load sessions: {exc}")
        sys.exit(1)

    estimator = TokenBudgetEstimator()
    estimation = estimator.calculate_token_estimation(sessions, model_id)
    batch_config = estimator.get_optimal_batch_config(model_id)
    parallel = get_optimal_configuration(
        len(sessions),
        model_id,
        estimator,
        stream_count=settings.parallel_stream_count,
        sessions_per_stream=settings.sessions_per_stream,
    )

    print(f"Estimate for {len(sessions)} sessions on {model_id}")
    print(f"  Estimated tokens:     {estimation.estimated_tokens}")
    print(f"  Estimated cost (USD): {estimation.cost_estimate:.4f}")
    print(f"  Max sessions/call:    {batch_config.max_sessions_per_call}")
    print(f"  Requires splitting:   {estimation.requires_splitting}")
    print(f"  Streams:              {parallel.stream_count}")
    print(f"  Sessions/stream:      {parallel.sessions_per_stream}")


def cmd_generate_mock(args: argparse.Namespace) -> None:
    try:
        sessions = generate_mock_sessions(count=args.count, seed=args.seed)
    except ValueError as exc:
        print(f"Mock generation failed: {exc}")
        sys.exit(1)
    out_path = write_mock_sessions(args.output, sessions)
    print(f"Generated {len(sessions)} mock sessions at {out_path}")


def _build_source(settings: Settings, args: argparse.Namespace) -> SessionSource:
    if args.source == "http":
        if not settings.session_api_base_url:
            raise ValueError("SESSION_API_BASE_URL must be set for --source=http.")
        return HttpSessionSource(
            base_url=settings.session_api_base_url,
            api_key=settings.session_api_key,
            timeout_seconds=settings.session_api_timeout_seconds,
            max_retries=settings.client_max_retries,
            backoff_seconds=settings.client_backoff_seconds,
        )
    return InMemorySessionSource(load_sessions_jsonl(_resolve_input_path(settings, args)))


def _print_run_summary(result: AnalysisRunResult, output_files: dict[str, Path]) -> None:
    stats = result.stats
    print(f"  Sessions found:     {result.total_found}")
    print(f"  Sessions classified: {stats.total_sessions}")
    print(f"  Transfer rate:      {stats.transfer_rate}%")
    print(f"  Containment rate:   {stats.containment_rate}%")
    print(f"  Fallbacks:          {stats.fallback_count}")
    print(f"  Rounds:             {result.processing_stats.total_rounds}")
    print(f"  Total tokens:       {result.token_usage.total_tokens}")
    print(f"  Cost (USD):         {result.token_usage.cost:.4f}")
    for item in stats.top_intents[:5]:
        print(f"    - {item.label}: {item.count} ({item.percentage}%)")
    for key, path in output_files.items():
        print(f"  {key}: {path}")


def _cmd_run_unlocked(settings: Settings, args: argparse.Namespace, run_root: Path) -> None:
    source = _build_source(settings, args)
    registry = ServiceRegistry()
    service = registry.get_or_create(
        args.bot_id,
        lambda: SessionClassificationService.from_settings(
            settings,
            source,
            on_close=source.close if isinstance(source, HttpSessionSource) else None,
        ),
    )
    try:
        result = service.run_analysis_sync(
            AnalysisRunConfig(
                start_date=args.start_date,
                start_time=args.start_time,
                session_count=args.count,
                model_id=args.model or settings.resolved_openai_model(),
                api_key=settings.resolved_openai_api_key(),
                additional_context=args.context or None,
            ),
            lambda phase, message: print(f"  [{phase}] {message}"),
        )
    finally:
        registry.close_all()

    output_files = save_run_artifacts(run_root, result)
    print(f"Run complete: {run_root.name}")
    _print_run_summary(result, output_files)


def cmd_run(settings: Settings, args: argparse.Namespace) -> None:
    """Run the classifier under an exclusive run-directory lock."""

    run_id = args.run_id or generate_run_id()
    run_root = ensure_directory(settings.output_dir / run_id)
    try:
        with run_lock(run_root):
            _cmd_run_unlocked(settings, args, run_root)
    except RunLockError as exc:
        print(f"Could not acquire run lock for run '{run_id}': {exc}")
        sys.exit(3)
    except InsufficientSessionsError as exc:
        print(f"Not enough sessions: {exc}")
        sys.exit(2)
    except SessionDatasetError as exc:
        print(f"Could not load sessions: {exc}")
        sys.exit(1)
    except ValueError as exc:
        print(f"Run configuration error: {exc}")
        sys.exit(1)


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    configure_logging(args.log_level)
    settings = Settings.from_yaml(args.config)

    if args.command == "info":
        cmd_info(settings)
    elif args.command == "validate-input":
        cmd_validate_input(settings, args)
    elif args.command == "estimate":
        cmd_estimate(settings, args)
    elif args.command == "generate-mock":
        cmd_generate_mock(args)
    elif args.command == "run":
        cmd_run(settings, args)
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
