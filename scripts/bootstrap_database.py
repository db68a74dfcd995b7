#!/usr/bin/env python3
"""Create the ClinicaVoice document table and mint a development token."""

from __future__ import annotations

import argparse
import sys
import uuid
from typing import List, Optional

from clinicavoice.auth import CLINICIAN, PATIENT, create_access_token
from clinicavoice.config import get_settings
from clinicavoice.store import create_store


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Initialise the ClinicaVoice document store and issue a bearer token for local use.",
    )
    parser.add_argument(
        "--database-url",
        "-d",
        default=settings.database_url,
        help="SQLAlchemy URL of the document store (default: %(default)s)",
    )
    parser.add_argument(
        "--subject",
        help="Subject id to embed in the token (default: a new random id)",
    )
    parser.add_argument(
        "--role",
        choices=(CLINICIAN, PATIENT),
        default=CLINICIAN,
        help="User type claim for the token (default: %(default)s)",
    )
    parser.add_argument("--email", help="Optional email claim")
    parser.add_argument(
        "--expires-minutes",
        type=int,
        default=None,
        help="Token lifetime in minutes (default: 60)",
    )
    parser.add_argument(
        "--skip-token",
        action="store_true",
        help="Only create the table; do not print a token.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    create_store(args.database_url)
    print(f"Document store ready at {args.database_url}")

    if args.skip_token:
        return 0

    subject = args.subject or str(uuid.uuid4())
    token = create_access_token(
        subject,
        args.role,
        email=args.email,
        expires_minutes=args.expires_minutes,
    )
    print(f"Subject: {subject} ({args.role})")
    print(f"Authorization: Bearer {token}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
