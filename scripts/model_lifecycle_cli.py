#!/usr/bin/env python3
"""
Model lifecycle CLI for operators and cron jobs.

Commands:
    list-versions [--json]
    rollback-production [version_id] [--user USER]
    run-shadow-mode <candidate_version_id> [duration_days]
    end-shadow-mode <test_id> [--auto-deploy] [--force]
    shadow-status
    weekly-retrain [--dry-run] [--force]
    track-performance {summary,degradation,export,resolve}
    cleanup-versions [--keep N]

Example:
    $ python scripts/model_lifecycle_cli.py list-versions
    $ python scripts/model_lifecycle_cli.py run-shadow-mode v20240115_083000_1a2b3c 7
    $ python scripts/model_lifecycle_cli.py end-shadow-mode test_1705307400000_9f8e7d6c --auto-deploy
    $ python scripts/model_lifecycle_cli.py weekly-retrain --dry-run
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import Settings, get_settings  # noqa: E402
from libs.common.exceptions import LifecycleError, ValidationError  # noqa: E402
from libs.common.logging import RunContext, configure_logging  # noqa: E402
from libs.model_lifecycle import (  # noqa: E402
    AlertingService,
    DeploymentController,
    JsonFileStateStore,
    PerformanceTracker,
    PromotionPolicy,
    ShadowTestManager,
    SlackNotifier,
    StatisticalComparator,
    TrainingOrchestrator,
    VersionStore,
    WeeklyRetrainPipeline,
)
from libs.model_lifecycle.training import resolve_entry_point  # noqa: E402

logger = logging.getLogger("model_lifecycle_cli")


# =============================================================================
# Component wiring
# =============================================================================


def load_settings(args: argparse.Namespace) -> Settings:
    """Settings from env/.env, with ``--root`` overriding the lifecycle root."""
    settings = get_settings()
    if args.root:
        settings = settings.model_copy(update={"lifecycle_root": Path(args.root)})
    return settings


def get_version_store(settings: Settings) -> VersionStore:
    return VersionStore(settings.versions_dir)


def get_shadow_manager(settings: Settings, store: VersionStore) -> ShadowTestManager:
    return ShadowTestManager(
        store,
        JsonFileStateStore(settings.shadow_state_path),
        comparator=StatisticalComparator(settings.significance_level),
        policy=PromotionPolicy(min_improvement=settings.min_improvement),
        duration_days=settings.shadow_duration_days,
    )


def get_tracker(settings: Settings) -> PerformanceTracker:
    return PerformanceTracker(
        JsonFileStateStore(settings.predictions_state_path),
        max_history=settings.max_prediction_history,
        resolution_window_days=settings.resolution_window_days,
        degradation_threshold=settings.degradation_threshold,
    )


def get_alerting(settings: Settings) -> AlertingService:
    notifier = SlackNotifier(settings.slack_webhook_url) if settings.slack_webhook_url else None
    return AlertingService(JsonFileStateStore(settings.alerts_state_path), notifier=notifier)


# =============================================================================
# Commands
# =============================================================================


def cmd_list_versions(args: argparse.Namespace, settings: Settings) -> int:
    """List stored versions, newest first."""
    store = get_version_store(settings)
    versions = store.list_versions()
    pointer = store.get_production_pointer()
    production_id = pointer.version_id if pointer else None

    if args.json:
        output = [
            {
                "version_id": v.version_id,
                "created_at": v.created_at.isoformat(),
                "num_models": v.metadata.num_models,
                "avg_accuracy": v.metadata.avg_accuracy,
                "git_commit": v.metadata.git_commit,
                "production": v.version_id == production_id,
            }
            for v in versions
        ]
        print(json.dumps(output, indent=2))
        return 0

    if not versions:
        print("No versions found.")
        return 0

    print(f"\n{'':<2}{'Version':<26} {'Created':<18} {'Models':<7} {'Avg Acc':<9} {'Commit':<10}")
    print("-" * 76)
    for v in versions:
        marker = "* " if v.version_id == production_id else "  "
        accuracy = (
            f"{v.metadata.avg_accuracy * 100:.2f}%" if v.metadata.avg_accuracy is not None else "N/A"
        )
        commit = (v.metadata.git_commit or "")[:8]
        print(
            f"{marker}{v.version_id:<26} "
            f"{v.created_at.strftime('%Y-%m-%d %H:%M'):<18} "
            f"{v.metadata.num_models:<7} "
            f"{accuracy:<9} "
            f"{commit:<10}"
        )
    if production_id:
        print(f"\n* production: {production_id}")
    return 0


def cmd_rollback_production(args: argparse.Namespace, settings: Settings) -> int:
    """Roll production back to the previous version, or to an explicit one."""
    store = get_version_store(settings)
    controller = DeploymentController(store, get_shadow_manager(settings, store))
    pointer = store.get_production_pointer()
    current = pointer.version_id if pointer else None

    version = controller.rollback(args.version_id, changed_by=args.user or "model_lifecycle_cli")
    print(f"Rolled back production: {current} -> {version.version_id}")
    return 0


def cmd_run_shadow_mode(args: argparse.Namespace, settings: Settings) -> int:
    """Start a shadow test of a candidate against production."""
    store = get_version_store(settings)
    manager = get_shadow_manager(settings, store)
    test = manager.start_shadow_mode(args.candidate_version_id, args.duration_days)

    print(f"Started shadow test {test.test_id}")
    print(f"  production: {test.production_version_id}")
    print(f"  candidate:  {test.candidate_version_id}")
    print(f"  ends:       {test.end_date.isoformat()}")
    return 0


def cmd_end_shadow_mode(args: argparse.Namespace, settings: Settings) -> int:
    """End a shadow test, print the recommendation and optionally deploy."""
    store = get_version_store(settings)
    manager = get_shadow_manager(settings, store)
    results = manager.end_shadow_mode(args.test_id, force=args.force)
    comparison = results.comparison
    recommendation = results.recommendation

    print(f"Shadow test {args.test_id} complete")
    print(
        f"  production: {comparison.production_accuracy * 100:.2f}% "
        f"({comparison.production_correct}/{comparison.production_n})"
    )
    print(
        f"  candidate:  {comparison.candidate_accuracy * 100:.2f}% "
        f"({comparison.candidate_correct}/{comparison.candidate_n})"
    )
    print(f"  p-value:    {comparison.p_value:.4f}")
    print(f"  decision:   {recommendation.decision.value}")
    for reason in recommendation.reasons:
        print(f"    - {reason}")

    if not args.auto_deploy:
        return 0

    controller = DeploymentController(store, manager, alerting=get_alerting(settings))
    result = controller.auto_deploy(args.test_id, changed_by="model_lifecycle_cli")
    if result.deployed:
        print(f"Deployed {result.version_id} (previous: {result.previous_version_id})")
    else:
        print(f"Not deployed: {result.reason}")
    return 0


def cmd_shadow_status(args: argparse.Namespace, settings: Settings) -> int:
    """Show the active shadow test and recent history."""
    store = get_version_store(settings)
    manager = get_shadow_manager(settings, store)

    active = manager.get_active_test()
    if active is None:
        print("No shadow test running.")
    else:
        print(f"Running: {active.test_id}")
        print(f"  {active.production_version_id} vs {active.candidate_version_id}")
        print(
            f"  predictions: production={len(active.predictions.production)} "
            f"candidate={len(active.predictions.candidate)}"
        )
        print(f"  ends: {active.end_date.isoformat()}")

    history = [t for t in manager.get_test_history(args.limit) if not t.is_running]
    if history:
        print(f"\n{'Test':<32} {'Candidate':<26} {'Decision':<9} {'Deployed':<8}")
        print("-" * 78)
        for test in history:
            decision = test.results.recommendation.decision.value if test.results else "-"
            print(
                f"{test.test_id:<32} {test.candidate_version_id:<26} "
                f"{decision:<9} {'yes' if test.deployed else 'no':<8}"
            )
    return 0


def cmd_weekly_retrain(args: argparse.Namespace, settings: Settings) -> int:
    """Run the weekly retrain pipeline with the configured backend."""
    if not settings.training_backend:
        print("Error: TRAINING_BACKEND is not configured (expected 'package.module:factory')")
        return 1

    backend = resolve_entry_point(settings.training_backend)()
    refresher = resolve_entry_point(settings.data_refresher)() if settings.data_refresher else None

    orchestrator = TrainingOrchestrator(
        backend,
        num_models=settings.num_models,
        parallel=settings.parallel_training,
        max_workers=settings.max_training_workers,
        timeout_seconds=settings.training_timeout_seconds,
        min_accuracy=settings.min_training_accuracy,
        min_successful_models=settings.min_successful_models,
    )
    store = get_version_store(settings)
    # Versions under a running shadow test must survive cleanup
    get_shadow_manager(settings, store)
    pipeline = WeeklyRetrainPipeline(
        orchestrator,
        store,
        refresher=refresher,
        alerting=get_alerting(settings),
        max_refresh_failure_ratio=settings.max_refresh_failure_ratio,
        keep_versions=settings.keep_versions,
    )

    try:
        report = pipeline.run(dry_run=args.dry_run, force=args.force)
    except ValidationError as e:
        print(f"Error: {e}")
        for issue in e.issues:
            print(f"  - {issue}")
        return 1

    summary = report.training
    print(f"Weekly retrain complete: {report.version_id}")
    print(f"  models:   {summary.successful}/{summary.total} trained")
    if summary.avg_accuracy is not None:
        print(f"  accuracy: {summary.avg_accuracy * 100:.2f}% avg")
    if report.forced:
        print("  WARNING: validation failed; deployed with --force")
    if report.deployed:
        print(f"  production: {report.previous_version_id} -> {report.version_id}")
    else:
        print("  dry run: production unchanged")
    print(f"  cleanup:  {report.cleanup.deleted} old versions deleted")
    return 0


def cmd_track_performance(args: argparse.Namespace, settings: Settings) -> int:
    """Performance tracking subcommands."""
    tracker = get_tracker(settings)

    if args.perf_cmd == "summary":
        print(json.dumps(tracker.get_summary(), indent=2, default=str))
        return 0

    if args.perf_cmd == "degradation":
        report = tracker.detect_degradation(args.threshold)
        if report.degraded:
            get_alerting(settings).alert_performance_degradation(report)
            print(f"DEGRADED ({report.severity}): {report.reason}")
            print(f"  {report.recommendation}")
        elif report.reason:
            print(report.reason)
        else:
            print(
                f"No degradation: overall {report.overall_accuracy * 100:.1f}%, "
                f"weekly {report.weekly_accuracy * 100:.1f}%"
            )
        return 0

    if args.perf_cmd == "export":
        rows = tracker.export_to_csv(Path(args.output))
        print(f"Exported {rows} resolved predictions to {args.output}")
        return 0

    if args.perf_cmd == "resolve":
        prices = json.loads(Path(args.prices).read_text(encoding="utf-8"))
        summary = tracker.resolve_from_market_data(prices)
        print(
            f"Resolved {summary.resolved} of {summary.processed} pending predictions "
            f"({summary.remaining} remaining)"
        )
        return 0

    print("Error: track-performance requires a subcommand (summary, degradation, export, resolve)")
    return 1


def cmd_cleanup_versions(args: argparse.Namespace, settings: Settings) -> int:
    """Delete old versions, keeping production and shadow-tested ones."""
    store = get_version_store(settings)
    get_shadow_manager(settings, store)
    result = store.cleanup_old_versions(args.keep if args.keep is not None else settings.keep_versions)
    print(f"Deleted {result.deleted} versions, kept {result.kept}")
    for version_id in result.deleted_ids:
        print(f"  - {version_id}")
    return 0


COMMANDS = {
    "list-versions": cmd_list_versions,
    "rollback-production": cmd_rollback_production,
    "run-shadow-mode": cmd_run_shadow_mode,
    "end-shadow-mode": cmd_end_shadow_mode,
    "shadow-status": cmd_shadow_status,
    "weekly-retrain": cmd_weekly_retrain,
    "track-performance": cmd_track_performance,
    "cleanup-versions": cmd_cleanup_versions,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Model lifecycle CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--root",
        help="Lifecycle root directory (default: LIFECYCLE_ROOT or data/lifecycle)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    list_parser = subparsers.add_parser("list-versions", help="List stored versions")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    rollback_parser = subparsers.add_parser("rollback-production", help="Rollback production")
    rollback_parser.add_argument("version_id", nargs="?", help="Explicit target version (optional)")
    rollback_parser.add_argument("--user", help="User making the change")

    shadow_parser = subparsers.add_parser("run-shadow-mode", help="Start a shadow test")
    shadow_parser.add_argument("candidate_version_id", help="Candidate version")
    shadow_parser.add_argument(
        "duration_days", nargs="?", type=float, help="Duration in days (default from settings)"
    )

    end_parser = subparsers.add_parser("end-shadow-mode", help="End a shadow test")
    end_parser.add_argument("test_id", help="Shadow test id")
    end_parser.add_argument(
        "--auto-deploy", action="store_true", help="Deploy the candidate if recommended"
    )
    end_parser.add_argument("--force", action="store_true", help="End before the scheduled end date")

    status_parser = subparsers.add_parser("shadow-status", help="Show shadow tests")
    status_parser.add_argument("--limit", type=int, default=10, help="History entries to show")

    retrain_parser = subparsers.add_parser("weekly-retrain", help="Retrain and promote")
    retrain_parser.add_argument("--dry-run", action="store_true", help="Do not touch production")
    retrain_parser.add_argument(
        "--force", action="store_true", help="Deploy even if validation fails"
    )

    perf_parser = subparsers.add_parser("track-performance", help="Performance tracking")
    perf_subparsers = perf_parser.add_subparsers(dest="perf_cmd", help="Performance command")
    perf_subparsers.add_parser("summary", help="Print accuracy summary")
    degradation_parser = perf_subparsers.add_parser("degradation", help="Check for degradation")
    degradation_parser.add_argument("--threshold", type=float, help="Accuracy drop threshold")
    export_parser = perf_subparsers.add_parser("export", help="Export resolved predictions to CSV")
    export_parser.add_argument("output", help="Output CSV path")
    resolve_parser = perf_subparsers.add_parser("resolve", help="Resolve against current prices")
    resolve_parser.add_argument("prices", help="JSON file mapping symbol to current price")

    cleanup_parser = subparsers.add_parser("cleanup-versions", help="Delete old versions")
    cleanup_parser.add_argument("--keep", type=int, help="Versions to keep (default from settings)")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    settings = load_settings(args)
    configure_logging(
        service_name=f"model_lifecycle.{args.command}",
        log_level=settings.log_level,
        log_file=settings.logs_dir / f"{args.command}.log",
    )

    with RunContext():
        logger.info("Command started", extra={"command": args.command})
        try:
            return COMMANDS[args.command](args, settings)
        except (LifecycleError, ValueError, OSError) as e:
            logger.error(
                "Command failed",
                extra={"command": args.command, "error": str(e), "error_type": type(e).__name__},
            )
            print(f"Error: {e}")
            return 1


if __name__ == "__main__":
    sys.exit(main())
