"""
Delete expired database sessions and verification tokens.

Safe to run on a schedule (cron / platform job); rows still in use are untouched.

Usage:
  python scripts/purge_sessions.py [--dry-run]
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts._db_utils import database_url_from_env, script_session  # noqa: E402


def purge(database_url: str, *, dry_run: bool = False, now: datetime | None = None) -> tuple[int, int]:
    from app.stackkit.identity import purge_expired
    from app.stackkit.models import AuthSession, VerificationToken

    now = now or datetime.utcnow()
    with script_session(database_url) as s:
        if dry_run:
            sessions = s.query(AuthSession).filter(AuthSession.expires <= now).count()
            tokens = s.query(VerificationToken).filter(VerificationToken.expires <= now).count()
            return sessions, tokens
        return purge_expired(s, now)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--dry-run", action="store_true", help="Count expired rows without deleting them.")
    args = parser.parse_args(argv)

    sessions, tokens = purge(database_url_from_env(), dry_run=args.dry_run)
    verb = "Would delete" if args.dry_run else "Deleted"
    print(f"{verb} {sessions} expired session(s) and {tokens} expired verification token(s).")


if __name__ == "__main__":
    main()
