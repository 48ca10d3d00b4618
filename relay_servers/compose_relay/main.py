"""
compose-relay CLI: deliver a rendered share card into a compose tab.

    compose-relay share --url https://x.com/compose/post --request '{"title": "..."}'
    compose-relay status
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .browser import CdpBrowser
from .config import RelayConfig
from .errors import RelayError
from .http_client import HttpClientError
from .launcher import BrowserLauncher
from .redaction import redact_url
from .state import SharePhase
from .workflow import create_default_orchestrator

logger = logging.getLogger("relay.compose")


def _load_request(args: argparse.Namespace) -> dict[str, Any]:
    raw = args.request
    if args.request_file:
        raw = Path(args.request_file).expanduser().read_text(encoding="utf-8")
    try:
        data = json.loads(raw or "")
    except json.JSONDecodeError as exc:
        raise SystemExit(f"--request must be a JSON object: {exc}") from exc
    if not isinstance(data, dict) or not data:
        raise SystemExit("--request must be a non-empty JSON object")
    return data


def _print(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")
    sys.stdout.flush()


def cmd_share(args: argparse.Namespace, config: RelayConfig) -> int:
    request = _load_request(args)
    launcher = BrowserLauncher(config)
    launch = launcher.ensure_running(timeout=float(args.launch_timeout))
    if not launch.ready:
        _print({"ok": False, "error": launch.message, "logTail": launch.log_tail})
        return 1

    browser = CdpBrowser(config)
    orchestrator = create_default_orchestrator(config, browser)
    try:
        try:
            handle = orchestrator.start_share(request, args.url)
        except RelayError as exc:
            _print({"ok": False, **exc.to_dict()})
            return 1

        record = orchestrator.wait_for_completion(handle.destination_id, float(args.timeout))
        auto_retry = None
        if record is not None and record.phase is SharePhase.FALLBACK_SHOWN:
            # The overlay's auto-retry watcher may still attach the card; let it run out its window.
            auto_retry = orchestrator.wait_for_auto_retry(handle.destination_id)
            record = orchestrator.state.get(handle.destination_id)
        summary: dict[str, Any] = {
            "ok": bool(record and record.sent),
            "share": handle.to_dict(),
            "record": record.to_dict() if record is not None else None,
            "stats": orchestrator.stats(),
        }
        if auto_retry is not None:
            summary["autoRetry"] = auto_retry
        saved = orchestrator.notifier.saved.get(handle.destination_id)
        if saved is not None:
            summary["savedArtifact"] = str(saved)
        _print(summary)

        if not args.keep_open:
            orchestrator.close_share(handle.destination_id, close_tab=False)
        return 0 if summary["ok"] else 1
    finally:
        orchestrator.close()
        browser.close()
        if not args.keep_open and launch.started and args.close_browser:
            launcher.stop()


def cmd_status(_args: argparse.Namespace, config: RelayConfig) -> int:
    browser = CdpBrowser(config)
    try:
        version = browser.version()
    except HttpClientError as exc:
        _print({"ok": False, "cdpPort": config.cdp_port, "error": str(exc)})
        return 1
    tabs = browser.list_tabs()
    _print(
        {
            "ok": True,
            "cdpPort": config.cdp_port,
            "browser": version.get("Browser"),
            "tabs": [
                {**t.to_dict(), "destination": config.is_destination_url(t.url)}
                for t in tabs
            ],
        }
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="compose-relay", description="Deliver a rendered image into a compose tab.")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    share = sub.add_parser("share", help="open the compose URL, render the card and attach it")
    share.add_argument("--url", required=True, help="compose URL on an allowlisted destination host")
    group = share.add_mutually_exclusive_group(required=True)
    group.add_argument("--request", help="render request as a JSON object")
    group.add_argument("--request-file", help="path to a JSON file with the render request")
    share.add_argument("--timeout", type=float, default=60.0, help="seconds to wait for workflow completion")
    share.add_argument("--launch-timeout", type=float, default=10.0)
    share.add_argument("--keep-open", action="store_true", help="keep the share record after the command returns")
    share.add_argument("--close-browser", action="store_true", help="stop a browser this command launched")
    share.set_defaults(func=cmd_share)

    status = sub.add_parser("status", help="show CDP reachability and open tabs")
    status.set_defaults(func=cmd_status)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the compose-relay CLI."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    config = RelayConfig.from_env()
    logger.info(
        "mode=%s port=%s binary=%s hosts=%s",
        config.mode,
        config.cdp_port,
        config.binary_path,
        ",".join(config.destination_hosts),
    )
    if getattr(args, "url", None):
        logger.info("destination=%s", redact_url(args.url))
    return int(args.func(args, config))


if __name__ == "__main__":
    sys.exit(main())
