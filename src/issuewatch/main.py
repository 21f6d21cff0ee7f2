from __future__ import annotations

import argparse
import logging
import os
import threading

from .config import load_config
from .models import PollStatus
from .service import PollingService, build_polling_service


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="issuewatch", description="Issue tracker change notifier (polling)")
    p.add_argument("--config", required=True, help="Path to JSON config file")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env ISSUEWATCH_LOG_LEVEL or INFO",
    )
    p.add_argument(
        "--status-interval",
        type=int,
        default=None,
        help="Daemon heartbeat interval seconds. Defaults to env ISSUEWATCH_STATUS_INTERVAL_SECONDS or 60. Set 0 to disable.",
    )

    mode = p.add_mutually_exclusive_group(required=False)
    mode.add_argument("--once", action="store_true", help="Poll every enabled source once and exit")
    mode.add_argument("--daemon", action="store_true", help="Run the per-source schedules until interrupted")
    mode.add_argument("--list", action="store_true", help="Print stored records, newest first, and exit")
    mode.add_argument("--mark-all-read", action="store_true", help="Mark every stored record as read and exit")
    return p


def _resolve_log_level(value: str | None) -> int:
    v = (value or "").strip().upper()
    if not v:
        return logging.INFO
    level = logging.getLevelNamesMapping().get(v)
    if isinstance(level, int):
        return level
    return logging.INFO


def _format_status(status: PollStatus) -> str:
    last = status.last_poll_time.isoformat() if status.last_poll_time else "-"
    nxt = status.next_poll_time.isoformat() if status.next_poll_time else "-"
    return (
        f"{status.source_name}(polling={status.is_polling} last={last} next={nxt} "
        f"changes={status.change_count} error={status.last_error or '-'})"
    )


def _sources_summary(service: PollingService) -> str:
    parts: list[str] = []
    for s in service.registry.snapshot():
        queries = ",".join(q.name for q in s.enabled_queries()) or "<none>"
        parts.append(
            f"{s.name}(id={s.source_id}, url={s.url}, every={s.poll_interval}, enabled={s.enabled}, queries={queries})"
        )
    return "; ".join(parts) if parts else "<none>"


def _notifiers_summary(service: PollingService) -> str:
    parts = [f"{type(n).__name__}({n.channel()})" for n in service.runner.notifiers]
    return "; ".join(parts) if parts else "<none>"


def _print_records(service: PollingService) -> None:
    for item in service.list_records():
        marker = "*" if not item.is_read else " "
        print(f"{marker} {item.updated_at.isoformat()} [{item.source_name} / {item.query_name}] {item.key} ({item.status}) {item.summary}  {item.url}")


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    env_log_level = os.environ.get("ISSUEWATCH_LOG_LEVEL")
    log_level = _resolve_log_level(args.log_level or env_log_level)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger = logging.getLogger("issuewatch")

    config = load_config(args.config)
    try:
        service = build_polling_service(config)
    except Exception:  # noqa: BLE001
        logger.exception("state store init failed: sqlite_path=%s", config.sqlite_path)
        return 2

    if args.list:
        _print_records(service)
        return 0
    if args.mark_all_read:
        count = service.mark_all_read()
        logger.info("marked read: records=%d", count)
        return 0

    status_interval = args.status_interval
    if status_interval is None:
        try:
            status_interval = int(os.environ.get("ISSUEWATCH_STATUS_INTERVAL_SECONDS") or 60)
        except ValueError:
            status_interval = 60
    status_interval = max(0, int(status_interval))

    mode = "daemon" if args.daemon else "once"
    logger.info("issuewatch start: mode=%s config=%s", mode, args.config)
    logger.info(
        "config: cadence_unit_seconds=%s sqlite_path=%s",
        config.cadence_unit_seconds,
        config.sqlite_path,
    )
    logger.info("sources: %s", _sources_summary(service))
    logger.info("notifiers: %s", _notifiers_summary(service))
    if not service.registry.enabled_sources():
        logger.warning("no enabled sources configured; nothing will be polled")
    if not service.runner.notifiers:
        logger.warning("no notifiers configured; changes will be recorded but not delivered")

    if mode == "once":
        results = service.poll_now(wait=True)
        errors = [r for r in results if r.error]
        logger.info(
            "once done: sources=%d fetched=%d changes=%d notify_failures=%d source_errors=%d",
            len(results),
            sum(r.records_fetched for r in results),
            sum(r.change_count for r in results),
            sum(r.notify_failures for r in results),
            len(errors),
        )
        return 1 if errors else 0

    stop_event = threading.Event()
    service.start()
    try:
        while not stop_event.wait(status_interval if status_interval > 0 else 3600):
            if status_interval <= 0:
                continue
            statuses = service.statuses()
            logger.info(
                "daemon alive: sources=%d %s",
                len(statuses),
                "; ".join(_format_status(s) for s in statuses.values()) or "<none>",
            )
    except KeyboardInterrupt:
        logger.info("interrupted, stopping")
    finally:
        service.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
