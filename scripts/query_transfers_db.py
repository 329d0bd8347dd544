#!/usr/bin/env python3
"""
Lightweight DB checker for the `transfer_jobs` table.
Usage:
  # use DATABASE_URL env
  DATABASE_URL="postgresql://..." python scripts/query_transfers_db.py

  # or pass as argument, optionally filtered
  python scripts/query_transfers_db.py --db "sqlite:///./drivemerge.db" --status failed --limit 50
"""
import os
import sys
import argparse

from dotenv import load_dotenv
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

load_dotenv()

QUERY = (
    "SELECT upload_id, user_id, file_name, status, total_bytes, transferred_bytes, error_message "
    "FROM transfer_jobs {where} ORDER BY created_at DESC LIMIT :limit"
)


def fetch(db_url, status=None, limit=20):
    engine = create_engine(db_url)
    where = "WHERE status = :status" if status else ""
    params = {"limit": limit}
    if status:
        params["status"] = status
    with engine.connect() as conn:
        rows = conn.execute(text(QUERY.format(where=where)), params).fetchall()
    engine.dispose()
    return rows


def _pct(done, total):
    if not total:
        return "-"
    return f"{round((done or 0) / total * 100)}%"


def pretty_print(rows):
    print('\nLatest transfers:')
    if not rows:
        print('(no rows)')
        return
    widths = [36, 6, 30, 11, 6, 40]
    header = ["upload_id", "user", "file_name", "status", "done", "error"]
    fmt = " | ".join([f"{{:{w}}}" for w in widths])
    print(fmt.format(*header))
    print('-' * (sum(widths) + 3 * (len(widths)-1)))
    for r in rows:
        upload_id, user_id, file_name, status, total, done, error = r
        print(fmt.format(
            upload_id,
            str(user_id),
            (file_name or '')[:widths[2]],
            status or '',
            _pct(done, total),
            (error or '')[:widths[5]],
        ))


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--db', help='DATABASE_URL override')
    p.add_argument('--status', choices=['pending', 'in_progress', 'succeeded', 'failed'])
    p.add_argument('--limit', type=int, default=20)
    args = p.parse_args()

    db_url = args.db or os.getenv('DATABASE_URL')
    if not db_url:
        print('Please provide DATABASE_URL via --db or environment variable DATABASE_URL')
        sys.exit(1)

    try:
        rows = fetch(db_url.strip(), args.status, args.limit)
    except SQLAlchemyError as e:
        print('Error connecting/querying DB:', e)
        sys.exit(3)

    pretty_print(rows)


if __name__ == '__main__':
    main()
