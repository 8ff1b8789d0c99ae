#!/usr/bin/env python3
from __future__ import annotations

import argparse
import getpass
import json
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create a tenant and its first admin user (or reset that admin's password).",
    )
    parser.add_argument("--slug", required=True, help="Tenant slug used at login, e.g. physics-dept")
    parser.add_argument("--name", default=None, help="Display name; defaults to the slug")
    parser.add_argument("--admin-email", required=True, help="Email of the first admin")
    parser.add_argument("--admin-name", default=None, help="Full name of the first admin")
    parser.add_argument(
        "--admin-password",
        default=None,
        help="Admin password (min. 8 characters). Prompted for when omitted.",
    )
    parser.add_argument(
        "--settings",
        default=None,
        help='Optional JSON object with tenant settings, e.g. \'{"skipApproval": true}\'',
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if not args.db_url:
        parser.error("Missing DB URL. Set RENTAL_DB_URL or pass --db-url.")
    if len((os.environ.get("SESSION_SIGNING_SECRET") or "").strip()) < 32:
        parser.error("SESSION_SIGNING_SECRET must be set (at least 32 characters).")
    settings = None
    if args.settings:
        try:
            settings = json.loads(args.settings)
        except json.JSONDecodeError as exc:
            parser.error(f"--settings is not valid JSON: {exc}")
        if not isinstance(settings, dict):
            parser.error("--settings must be a JSON object.")
    password = args.admin_password or getpass.getpass("Admin password: ")

    from db.base import Base
    from services.errors import RentalError
    from services.user_directory_service import bootstrap_tenant

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    Base.metadata.create_all(bind=engine)
    session_factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    with session_factory() as db:
        try:
            tenant, admin = bootstrap_tenant(
                db,
                slug=args.slug,
                name=args.name or args.slug,
                admin_email=args.admin_email,
                admin_name=args.admin_name or args.admin_email,
                admin_password=password,
                settings=settings,
            )
        except RentalError as exc:
            print(f"ERROR {exc.code}: {exc.message}", file=sys.stderr)
            return 1

    print(f"OK tenant_id={tenant.TenantID} slug={tenant.Slug} admin_user_id={admin.UserID} admin_email={admin.Email}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
