#!/usr/bin/env python3
"""
Create an API key for a signer or integration from the command line.
Useful for bootstrapping the first internal key before any admin exists.
"""

import argparse
import datetime
import os
import sys

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dealsign.config import load_settings
from dealsign.db.models import ApiKey, ApiKeyType, EntityKind, utcnow
from dealsign.db.session import configure_engine, get_session
from dealsign.db.store import ApiKeyStore
from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging("dealsign.create_api_key", "dealsign.log")


def main():
    parser = argparse.ArgumentParser(description="Create a signature API key")
    parser.add_argument("name", help="Display name, e.g. the customer's name")
    parser.add_argument("--type", choices=[t.value for t in ApiKeyType], default="customer")
    parser.add_argument("--entity-type", choices=[k.value for k in EntityKind], default="User")
    parser.add_argument("--entity-id", default=None)
    parser.add_argument("--days", type=int, default=30, help="Days until the key expires (0 = never)")
    parser.add_argument("--can-create", action="store_true", help="Allow creating signature requests")
    args = parser.parse_args()

    configure_engine(load_settings()["DATABASE_URL"])
    record = ApiKey(
        key=ApiKey.generate_key(),
        name=f"Signature Key - {args.name}",
        description=f"API key for {args.name} to sign documents",
        type=ApiKeyType(args.type),
        entity_type=EntityKind(args.entity_type),
        entity_id=args.entity_id,
        expires_at=utcnow() + datetime.timedelta(days=args.days) if args.days else None,
        created_by="cli",
    )
    record.set_permissions({
        "signAgreements": True,
        "viewDocuments": True,
        "createSignatures": args.can_create,
    })

    try:
        ApiKeyStore(get_session()).add(record)
    except Exception:
        logger.exception("Failed to create API key")
        sys.exit(1)

    print(f"API key created for {args.name}")
    print(f"Key:     {record.key}")
    print(f"Expires: {record.expires_at.isoformat() if record.expires_at else 'never'}")
    logger.info("API key %s... created from the command line", record.key[:8])


if __name__ == "__main__":
    main()
