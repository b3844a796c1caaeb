import argparse
import json
import sys
from pathlib import Path

from loguru import logger

from ingestion.client import RevenueReportClient
from ingestion.service import ingest_report, quarantine
from royalties.core.config import get_settings
from royalties.db import init_db, session_scope
from royalties.domain import QuarantineEntry
from royalties.errors import ExternalError


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest a platform revenue report into the ledger")
    parser.add_argument("--platform", required=True, help="Platform identifier the report belongs to")
    parser.add_argument("--report-id", required=True, help="Report identifier on the platform feed")
    parser.add_argument("--page-size", type=int, default=None, help="Override pagination size")
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Write JSON summary to the specified path",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    init_db()

    try:
        with RevenueReportClient(platform_id=args.platform, page_size=args.page_size) as client:
            summary = ingest_report(
                args.platform,
                args.report_id,
                client=client,
                session_scope=session_scope,
                settings=settings,
            )
    except ExternalError as exc:
        logger.exception("Report feed failed for {} {}: {}", args.platform, args.report_id, exc.message)
        quarantine(
            session_scope,
            QuarantineEntry(
                kind="revenue_report",
                item_key=f"{args.platform}:{args.report_id}",
                reason=exc.message,
                retriable=exc.retriable,
                details=exc.to_dict(),
            ),
        )
        return 1

    if args.summary_path:
        args.summary_path.parent.mkdir(parents=True, exist_ok=True)
        args.summary_path.write_text(json.dumps(summary.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        logger.info("Wrote ingest summary to {}", args.summary_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
