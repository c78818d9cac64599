"""Command line entrypoint for scheduled batch runs."""

from __future__ import annotations

import argparse
import json
from typing import Any, Callable, Dict, Optional, Sequence
from uuid import uuid4

from streamvault.core.logger import bind_run_context, clear_request_context, get_logger
from streamvault.core.observability import capture_exception, init_sentry, sentry_scope
from streamvault.service import StreamAccessService, get_stream_service
from streamvault.storage.db import load_models


logger = get_logger("streamvault.cli")


def _drain_queue(service: StreamAccessService, args: argparse.Namespace) -> Dict[str, Any]:
    return service.drain_queue(args.batch_size).as_dict()


def _reconcile(service: StreamAccessService, args: argparse.Namespace) -> Dict[str, Any]:
    return service.run_reconciliation().as_dict()


def _cleanup_tokens(service: StreamAccessService, args: argparse.Namespace) -> Dict[str, Any]:
    return service.run_token_cleanup().as_dict()


def _cleanup_sources(service: StreamAccessService, args: argparse.Namespace) -> Dict[str, Any]:
    report = service.run_source_cleanup().as_dict()
    report["statistics"] = service.source_cleanup_statistics()
    return report


def _reset_asset(service: StreamAccessService, args: argparse.Namespace) -> Dict[str, Any]:
    result = service.reset_for_retry(args.asset_id, source_ref=args.source_ref)
    return {
        "ok": result.ok,
        "asset_id": result.asset_id,
        "reason": result.reason,
        "queue_item_id": result.queue_item_id,
        "detached_remote_id": result.detached_remote_id,
    }


def _queue_stats(service: StreamAccessService, args: argparse.Namespace) -> Dict[str, Any]:
    return service.queue_statistics()


def _sync_stats(service: StreamAccessService, args: argparse.Namespace) -> Dict[str, Any]:
    return service.sync_statistics()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="streamvault", description="Run streamvault batch jobs once.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    drain = subparsers.add_parser("drain-queue", help="Process due upload/delete/sync items.")
    drain.add_argument("--batch-size", type=int, default=None, help="Max items to select this run.")
    drain.set_defaults(handler=_drain_queue)

    reconcile = subparsers.add_parser("reconcile", help="Refresh statuses and detect stuck or orphaned assets.")
    reconcile.set_defaults(handler=_reconcile)

    cleanup = subparsers.add_parser("cleanup-tokens", help="Remove expired, superseded and invalid token rows.")
    cleanup.set_defaults(handler=_cleanup_tokens)

    sources = subparsers.add_parser(
        "cleanup-sources", help="Delete local source files of assets confirmed ready remotely."
    )
    sources.set_defaults(handler=_cleanup_sources)

    reset = subparsers.add_parser("reset-asset", help="Return an errored asset to pending and queue an upload.")
    reset.add_argument("asset_id")
    reset.add_argument("--source-ref", default=None, help="Override the stored upload source.")
    reset.set_defaults(handler=_reset_asset)

    queue_stats = subparsers.add_parser("queue-stats", help="Print queue statistics.")
    queue_stats.set_defaults(handler=_queue_stats)

    sync_stats = subparsers.add_parser("sync-stats", help="Print asset and reconciliation statistics.")
    sync_stats.set_defaults(handler=_sync_stats)
    return parser


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    service_factory: Callable[[], StreamAccessService] = get_stream_service,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    batch_size = getattr(args, "batch_size", None)
    if batch_size is not None and batch_size <= 0:
        parser.error("--batch-size must be positive")

    load_models()
    init_sentry()
    run_id = str(uuid4())
    bind_run_context(run_id=run_id, job=args.command)
    try:
        with sentry_scope(job=args.command):
            payload = args.handler(service_factory(), args)
    except Exception as exc:
        capture_exception(exc)
        logger.error("cli_command_failed", command=args.command, error=str(exc))
        raise
    finally:
        clear_request_context()

    print(json.dumps(payload, ensure_ascii=True, separators=(",", ":"), sort_keys=True, default=str))
    if args.command == "reset-asset" and not payload.get("ok"):
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
