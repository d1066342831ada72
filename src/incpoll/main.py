from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
import time

from .config import load_config
from .http_utils import HttpClient
from .runner import build_runner
from .sources.reddit import RedditClient


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="incpoll", description="Incremental polling connectors for SaaS REST APIs")
    p.add_argument("--config", help="Path to JSON config file")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env INCPOLL_LOG_LEVEL or INFO",
    )
    p.add_argument(
        "--status-interval",
        type=int,
        default=None,
        help="Daemon heartbeat interval seconds. Defaults to env INCPOLL_STATUS_INTERVAL_SECONDS or 10. Set 0 to disable.",
    )

    mode = p.add_mutually_exclusive_group(required=False)
    mode.add_argument("--once", action="store_true", help="Run one poll cycle and exit")
    mode.add_argument("--daemon", action="store_true", help="Run forever with poll interval")
    mode.add_argument(
        "--search-subreddits",
        metavar="QUERY",
        default=None,
        help="List subreddits matching QUERY (uses env REDDIT_TOKEN) and exit",
    )
    return p


def _resolve_log_level(value: str | None) -> int:
    v = (value or "").strip().upper()
    if not v:
        return logging.INFO
    level = logging.getLevelNamesMapping().get(v)
    if isinstance(level, int):
        return level
    return logging.INFO


def _connectors_summary(runner) -> str:  # noqa: ANN001
    parts = [f"{type(c).__name__}({c.key()})" for c in getattr(runner, "connectors", ())]
    return "; ".join(parts) if parts else "<none>"


def _sinks_summary(runner) -> str:  # noqa: ANN001
    parts = [f"{type(s).__name__}({s.channel()})" for s in getattr(runner, "sinks", ())]
    return "; ".join(parts) if parts else "<none>"


def _search_subreddits(query: str) -> int:
    client = RedditClient(http=HttpClient(), token=os.environ.get("REDDIT_TOKEN"))
    for title, display_name in client.search_subreddits(query):
        print(f"{display_name}\t{title}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    env_log_level = os.environ.get("INCPOLL_LOG_LEVEL")
    log_level = _resolve_log_level(args.log_level or env_log_level)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger = logging.getLogger("incpoll")

    if args.search_subreddits is not None:
        return _search_subreddits(args.search_subreddits)
    if not args.config:
        parser.error("--config is required")

    config = load_config(args.config)
    # SIGTERM/SIGINT 作为宿主取消信号：进行中的退避等待与后续投递都会尽快停止。
    stop = threading.Event()
    runner = build_runner(config, cancel=stop)

    status_interval = args.status_interval
    if status_interval is None:
        try:
            status_interval = int(os.environ.get("INCPOLL_STATUS_INTERVAL_SECONDS") or 10)
        except ValueError:
            status_interval = 10
    status_interval = max(0, int(status_interval))

    mode = "daemon" if args.daemon and not args.once else "once"
    logger.info("incpoll start: mode=%s config=%s", mode, args.config)
    logger.info(
        "config: poll_interval_seconds=%d sqlite_path=%s page_size=%d backfill_limit=%d max_attempts=%d",
        config.poll_interval_seconds,
        config.sqlite_path,
        config.poller.page_size,
        config.poller.backfill_limit,
        config.retry.max_attempts,
    )
    logger.info("connectors: %s", _connectors_summary(runner))
    logger.info("sinks: %s", _sinks_summary(runner))
    if not getattr(runner, "connectors", ()):
        logger.warning("no connectors configured; nothing will be polled")
    if not getattr(runner, "sinks", ()):
        logger.warning("no sinks configured; emissions will be marked seen but not delivered")

    def _on_signal(signum, _frame) -> None:  # noqa: ANN001
        logger.info("signal received, stopping: signum=%d", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    if args.once or not args.daemon:
        report = runner.run_once(cancel=stop)
        logger.info(
            "once done: duration_ms=%d sources=%d pages=%d items=%d emitted=%d skipped_seen=%d degraded=%d source_errors=%d cancelled=%s",
            report.duration_ms,
            len(report.sources),
            report.pages_fetched,
            report.items_fetched,
            report.emitted,
            report.skipped_seen,
            report.degraded_sources,
            report.source_errors,
            report.cancelled,
        )
        return 1 if report.source_errors else 0

    logger.info(
        "daemon: poll_interval_seconds=%d status_interval_seconds=%d",
        max(1, config.poll_interval_seconds),
        status_interval,
    )

    cycle_id = 0
    last_summary_logged_at = 0.0
    next_heartbeat_at = time.monotonic() + status_interval if status_interval > 0 else float("inf")
    acc = {
        "items_fetched": 0,
        "emitted": 0,
        "skipped_seen": 0,
        "degraded_sources": 0,
        "source_errors": 0,
    }

    while not stop.is_set():
        cycle_id += 1
        try:
            report = runner.run_once(cancel=stop)
        except Exception:  # noqa: BLE001
            logger.exception("cycle crashed: id=%d", cycle_id)
            stop.wait(5)
            continue

        now = time.monotonic()
        acc["items_fetched"] += report.items_fetched
        acc["emitted"] += report.emitted
        acc["skipped_seen"] += report.skipped_seen
        acc["degraded_sources"] += report.degraded_sources
        acc["source_errors"] += report.source_errors

        should_log_cycle = (
            status_interval <= 0
            or report.emitted > 0
            or report.degraded_sources > 0
            or report.source_errors > 0
            or (now - last_summary_logged_at) >= max(1, status_interval)
        )
        if should_log_cycle:
            logger.info(
                "cycle summary: id=%d duration_ms=%d items=%d emitted=%d skipped_seen=%d degraded=%d source_errors=%d",
                cycle_id,
                report.duration_ms,
                acc["items_fetched"],
                acc["emitted"],
                acc["skipped_seen"],
                acc["degraded_sources"],
                acc["source_errors"],
            )
            acc = {k: 0 for k in acc}
            last_summary_logged_at = now

        sleep_end = time.monotonic() + max(1, config.poll_interval_seconds)
        while not stop.is_set():
            now = time.monotonic()
            if now >= sleep_end:
                break

            if status_interval > 0 and now >= next_heartbeat_at:
                logger.info(
                    "daemon alive: cycles=%d next_poll_in=%ds last_duration_ms=%d last_emitted=%d last_source_errors=%d",
                    cycle_id,
                    max(0, int(sleep_end - now)),
                    report.duration_ms,
                    report.emitted,
                    report.source_errors,
                )
                next_heartbeat_at = now + status_interval

            remaining_s = sleep_end - now
            if status_interval > 0:
                stop.wait(min(remaining_s, max(0.2, next_heartbeat_at - now)))
            else:
                stop.wait(min(remaining_s, 1.0))

    logger.info("incpoll stopped: cycles=%d", cycle_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
