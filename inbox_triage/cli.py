from __future__ import annotations

import argparse
import logging
from pathlib import Path

from .config import AppConfig, load_config
from .errors import InvalidCredentialError, PreconditionError
from .triage_logic import build_pipeline, init_mailbox
from .utils import configure_logging, ensure_dir, load_env_file, utc_now

logger = logging.getLogger("inbox_triage.cli")


def _write_report(config: AppConfig, name: str, content: str) -> Path:
    report_dir = Path(config.triage.report_dir)
    if not report_dir.is_absolute():
        report_dir = config.repo_root / report_dir
    out_dir = ensure_dir(report_dir)
    stamp = utc_now().strftime("%Y%m%d-%H%M%S")
    path = out_dir / f"inbox_triage_{name}_{stamp}.md"
    path.write_text(content, encoding="utf-8")
    return path


def main() -> None:
    load_env_file()
    parser = argparse.ArgumentParser("inbox-triage")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_init = sub.add_parser("init", help="create missing labels and the log header row")
    p_init.add_argument("--config", "-c", required=True)
    p_init.add_argument("-v", "--verbose", action="count", default=0)

    p_run = sub.add_parser("run", help="triage every conversation carrying the incoming label")
    p_run.add_argument("--config", "-c", required=True)
    p_run.add_argument("-v", "--verbose", action="count", default=0)

    args = parser.parse_args()
    configure_logging(args.verbose or 0)

    cfg = load_config(args.config)

    if args.cmd == "init":
        results = init_mailbox(cfg)
        for name, action in results.items():
            print(f"{name}: {action}")
        return

    if args.cmd == "run":
        try:
            pipeline = build_pipeline(cfg)
            report = pipeline.run_batch()
        except InvalidCredentialError as exc:
            logger.error("Invalid AI credential: %s", exc)
            raise SystemExit(f"Invalid AI credential: {exc}")
        except PreconditionError as exc:
            logger.error("Run aborted: %s", exc)
            raise SystemExit(f"Run aborted: {exc}")
        report_path = _write_report(cfg, "run", report.to_markdown())
        print(f"Processed {report.processed} conversation(s). Report: {report_path}")
        return
