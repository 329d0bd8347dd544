#!/usr/bin/env python3
"""
Re-sync `used_space_gb` / `total_space_gb` of every connected Drive account
from Google's own storage quota.

Usage:
  - Ensure GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET are set (or in .env)
  - Ensure DATABASE_URL points to the database used by the running app
  - From the repo root run: python -m scripts.recompute_usage [--user-id 3] [--dry-run]
    (plain `python scripts/recompute_usage.py` only works once the project is
    installed with `pip install -e .`, since it imports the `app` package)

Uploads bump used space locally; files deleted straight from Drive never
give it back. Run this to drift-correct. Best done while no uploads are in
flight, since it overwrites the counters.
"""
import os
import argparse

from googleapiclient.errors import HttpError

from app.database import SessionLocal
from app.exceptions import TransferError
from app.gdrive import DriveGateway
from app.models import DriveAccount


def recompute(db, drive, user_id=None, dry_run=False):
    query = db.query(DriveAccount)
    if user_id is not None:
        query = query.filter(DriveAccount.user_id == user_id)

    updated = 0
    for account in query.all():
        print(f"Processing {account.email} (user {account.user_id})...")
        try:
            creds = drive.credentials_for(account.refresh_token)
            profile = drive.fetch_account_profile(creds.token)
        except (TransferError, HttpError) as e:
            print(f" -> quota lookup failed: {e}")
            continue
        print(
            f" -> used {account.used_space_gb:.2f} -> {profile['used_space_gb']:.2f} GB, "
            f"total {account.total_space_gb:.2f} -> {profile['total_space_gb']:.2f} GB"
        )
        if not dry_run:
            account.used_space_gb = profile["used_space_gb"]
            account.total_space_gb = profile["total_space_gb"]
            updated += 1

    if not dry_run:
        db.commit()
    return updated


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--user-id', type=int, help='only this user\'s accounts')
    p.add_argument('--dry-run', action='store_true')
    args = p.parse_args()

    print(f"Using DATABASE_URL={os.getenv('DATABASE_URL', 'sqlite:///./drivemerge.db')}")
    db = SessionLocal()
    try:
        n = recompute(db, DriveGateway(), args.user_id, args.dry_run)
    finally:
        db.close()
    print(f"Updated {n} account(s)")


if __name__ == '__main__':
    main()
