#!/usr/bin/env python3
"""
Merge duplicate account records.

Folds a secondary account into a primary one, moving calls, contacts,
stories, CRM events, access grants and domains to the surviving record.
Every merge is recorded as a merge run and can be undone.

Usage:
    python scripts/merge_accounts.py --org <org> --primary <id> --secondary <id> [--execute]
    python scripts/merge_accounts.py --org <org> --list-duplicates
    python scripts/merge_accounts.py --org <org> --search "name pattern"
    python scripts/merge_accounts.py --org <org> --list-runs
    python scripts/merge_accounts.py --org <org> --undo <run_id>
"""
from pathlib import Path
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / ".env")

import sys
import logging
import argparse
from typing import Optional

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.services.account_merge import AccountMergeEngine, get_account_merge_engine
from api.services.resilience import ConflictError, NotFoundError, ValidationError

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


def print_preview(engine: AccountMergeEngine, org_id: str, primary_id: str, secondary_id: str):
    preview = engine.preview_merge(org_id, primary_id, secondary_id)
    for label, summary in (("Primary (kept)", preview.primary), ("Secondary (merged)", preview.secondary)):
        print(f"\n{label}: {summary.name} ({summary.id})")
        print(f"  Domain: {summary.domain or '-'}")
        print(f"  Aliases: {', '.join(summary.domain_aliases) or '-'}")
        print(f"  Calls: {summary.call_count}  Contacts: {summary.contact_count}  Stories: {summary.story_count}")
    if preview.duplicate_contact_emails:
        print(f"\nDuplicate contacts (collapsed into primary): {', '.join(preview.duplicate_contact_emails)}")
    if preview.aliases_to_add:
        print(f"Domains gained by primary: {', '.join(preview.aliases_to_add)}")


def main(argv: Optional[list[str]] = None, engine: Optional[AccountMergeEngine] = None) -> int:
    parser = argparse.ArgumentParser(description='Merge duplicate account records')
    parser.add_argument('--org', required=True, help='Organization id')
    parser.add_argument('--primary', help='ID of the account to keep')
    parser.add_argument('--secondary', help='ID of the account to merge into primary')
    parser.add_argument('--execute', action='store_true', help='Actually apply changes')
    parser.add_argument('--notes', help='Notes stored on the merge run')
    parser.add_argument('--list-duplicates', action='store_true', help='List potential duplicates')
    parser.add_argument('--search', help='Search for accounts by name/domain')
    parser.add_argument('--list-runs', action='store_true', help='List recent merge runs')
    parser.add_argument('--undo', metavar='RUN_ID', help='Undo a merge run')
    args = parser.parse_args(argv)

    engine = engine or get_account_merge_engine()

    if args.list_duplicates:
        duplicates = engine.find_duplicates(args.org)
        print(f"\nFound {len(duplicates)} potential duplicate pairs:\n")
        for i, pair in enumerate(duplicates, 1):
            a, b = pair.account_a, pair.account_b
            print(f"{i}. {a['name']} ({a['id'][:8]}...) <-> {b['name']} ({b['id'][:8]}...)")
            print(f"   similarity={pair.similarity:.2f} reason={pair.match_reason}")
        return 0

    if args.search:
        matches = engine.store.search_accounts(args.org, args.search)
        print(f"\nFound {len(matches)} matches for '{args.search}':\n")
        for account in matches:
            print(f"  ID: {account.id}")
            print(f"  Name: {account.name}")
            print(f"  Domain: {account.domain}")
            print()
        return 0

    if args.list_runs:
        runs = engine.list_merge_runs(args.org)
        print(f"\n{len(runs)} merge runs:\n")
        for run in runs:
            counts = run.moved_counts
            print(f"  {run.id}  {run.status.value}  {run.created_at}")
            print(f"    {run.secondary_account_id[:8]}... -> {run.primary_account_id[:8]}... "
                  f"(calls={counts['call_ids']}, contacts={counts['contact_ids']})")
        return 0

    try:
        if args.undo:
            result = engine.undo_merge(args.org, args.undo)
            logger.info(f"Restored account {result['restored_account_id']} from run {result['merge_run_id']}")
            return 0

        if not args.primary or not args.secondary:
            parser.print_help()
            print("\nExamples:")
            print("  python scripts/merge_accounts.py --org acme --search 'Globex'")
            print("  python scripts/merge_accounts.py --org acme --list-duplicates")
            print("  python scripts/merge_accounts.py --org acme --primary abc123 --secondary def456")
            print("  python scripts/merge_accounts.py --org acme --primary abc123 --secondary def456 --execute")
            return 2

        print_preview(engine, args.org, args.primary, args.secondary)
        if not args.execute:
            logger.info("\nDRY RUN - no changes made. Use --execute to apply.")
            return 0

        run = engine.merge_accounts(args.secondary, args.primary, args.org, notes=args.notes, requested_by="cli")
        logger.info(f"\nMerged. Run id: {run.id} (undo with --undo {run.id})")
        return 0
    except (NotFoundError, ValidationError, ConflictError) as e:
        logger.error(str(e))
        return 1


if __name__ == '__main__':
    sys.exit(main())
