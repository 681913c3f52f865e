from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from workspace_store.config import settings  # noqa: E402
from workspace_store.db.base import SessionLocal  # noqa: E402
from workspace_store.logging_config import configure_logging  # noqa: E402
from workspace_store.services.archival import TTLArchivalJob  # noqa: E402
from workspace_store.services.archive_storage import ArchiveStorage  # noqa: E402


def _parse_now(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def main(*, dry_run: bool, batch_size: int, upload: bool, now: datetime | None) -> int:
    configure_logging()
    storage = ArchiveStorage() if upload and settings.ARCHIVE_S3_BUCKET else None
    job = TTLArchivalJob(SessionLocal, storage=storage, batch_size=batch_size, dry_run=dry_run)
    summary = job.run(now=now)
    print(f"Archival complete: archived={summary.archived} failed={summary.failed} dry_run={summary.dry_run}")
    for workspace_id, error in summary.failures.items():
        print(f"  failed {workspace_id}: {error}")
    return 1 if summary.failed else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Archive and anonymize workspaces past their TTL.")
    parser.add_argument("--dry-run", action="store_true", default=settings.ARCHIVE_DRY_RUN, help="Report without writing.")
    parser.add_argument("--batch-size", type=int, default=settings.ARCHIVE_BATCH_SIZE, help="Workspaces per batch.")
    parser.add_argument("--no-upload", action="store_true", help="Skip the S3 archive upload even when a bucket is configured.")
    parser.add_argument("--now", default=None, help="ISO timestamp to evaluate expiry against (defaults to now).")
    args = parser.parse_args()
    sys.exit(main(dry_run=args.dry_run, batch_size=args.batch_size, upload=not args.no_upload, now=_parse_now(args.now)))
