import argparse
import json
import logging
from datetime import date, datetime
from typing import Callable, Optional

from .config import (
    IMPORT_STRATEGY_CHOICES,
    get_db_url,
    get_import_strategy,
    set_setting,
    show_config,
)
from .storage.dates import coerce_datetime, format_timestamp
from .storage.db import get_default_db_url, get_engine, get_session, init_db
from .storage.importer import AccountConflict, ImportStrategy, import_archive
from .storage.queries import (
    get_thread,
    interaction_to_dict,
    list_bookmarks,
    list_likes,
    list_posts,
    post_to_dict,
)
from .storage.search import search_posts_in_db, search_results_payload
from .storage.store import ArchiveStore

DEFAULT_DB_HELP = "Database URL (default: TOOTAPP_DB_URL or ~/.local/share/tootapp/tootapp.db)"


def _prompt_for_strategy(conflict: AccountConflict) -> ImportStrategy:
    print(f"Account @{conflict.username} ({conflict.display_name}) is already imported.")
    print("  1) Replace (discard the stored data for this account)")
    print("  2) Merge (keep stored data, add and update from this archive)")
    while True:
        choice = input("Choose 1 or 2 (replace/merge): ").strip().lower()
        if choice in {"1", "replace", "r"}:
            return ImportStrategy.REPLACE
        if choice in {"2", "merge", "m"}:
            return ImportStrategy.MERGE
        print("Please enter 1 or 2.")


def _conflict_resolver(strategy: str) -> Callable[[AccountConflict], ImportStrategy]:
    if strategy == "ask":
        return _prompt_for_strategy
    chosen = ImportStrategy(strategy)
    return lambda _conflict: chosen


def _print_progress(stage: str, completed: int, total: int) -> None:
    if total <= 1:
        if completed >= total:
            print(f"  {stage}")
        return
    if completed == total:
        print(f"  {stage}: {completed}/{total}")


def _parse_date(value: str | None, *, flag: str) -> date | None:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError(f"Invalid date for {flag}. Use YYYY-MM-DD.") from exc


def _format_timestamp(value: datetime | None) -> str:
    return format_timestamp(coerce_datetime(value)) or "unknown"


def _resolve_db(db: Optional[str]) -> str:
    return db or get_db_url() or get_default_db_url()


def _open_store(db: Optional[str]) -> ArchiveStore:
    engine = get_engine(_resolve_db(db))
    init_db(engine)
    return ArchiveStore(get_session(engine))


def _print_post(post) -> None:
    print(f"Post ID: {post.post_id}")
    print(f"Account: {post.account_id}")
    print(f"Published: {_format_timestamp(post.published_at)} ({post.visibility})")
    if post.kind == "boost":
        print(f"Boosted: {post.boosted_post_id or post.original_url}")
    else:
        print(f"Text: {post.content_text}")
    print("-" * 50)


def _add_db_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--db", type=str, default=None, help=DEFAULT_DB_HELP)


def main() -> None:
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(description="tootapp - Explore a Mastodon archive offline")
    parser.add_argument("--verbose", action="store_true", help="Log progress details")
    subparsers = parser.add_subparsers(dest="command", help="Available commands", required=True)

    # Import archive subcommand
    import_parser = subparsers.add_parser(
        "import-archive",
        help="Import a Mastodon export (.zip or .tar.gz) into a SQLite database",
    )
    import_parser.add_argument("path", type=str, help="Path to the archive file")
    _add_db_argument(import_parser)
    import_parser.add_argument(
        "--strategy",
        choices=IMPORT_STRATEGY_CHOICES,
        default=None,
        help="What to do when the account already exists (default: TOOTAPP_IMPORT_STRATEGY or ask)",
    )
    import_parser.add_argument("--json", action="store_true", help="Output raw JSON result")
    import_parser.add_argument("--quiet", action="store_true", help="Do not print progress")

    # Accounts subcommands
    accounts_parser = subparsers.add_parser("accounts", help="List imported accounts")
    _add_db_argument(accounts_parser)
    accounts_parser.add_argument("--json", action="store_true", help="Output raw JSON result")

    delete_parser = subparsers.add_parser(
        "delete-account", help="Delete an imported account and all of its data"
    )
    delete_parser.add_argument("account_id", type=str, help="Account id (actor URI)")
    _add_db_argument(delete_parser)

    history_parser = subparsers.add_parser("history", help="Show the import history of an account")
    history_parser.add_argument("account_id", type=str, help="Account id (actor URI)")
    _add_db_argument(history_parser)
    history_parser.add_argument("--json", action="store_true", help="Output raw JSON result")

    # Search stored posts subcommand
    search_parser = subparsers.add_parser(
        "search",
        help="Search stored posts in the local SQLite database",
    )
    search_parser.add_argument("query", type=str, help="FTS query string")
    _add_db_argument(search_parser)
    search_parser.add_argument("--account", type=str, help="Filter by account id or username")
    search_parser.add_argument("--since", type=str, help="Filter by date (YYYY-MM-DD)")
    search_parser.add_argument("--until", type=str, help="Filter by date (YYYY-MM-DD)")
    search_parser.add_argument("--limit", type=int, default=20, help="Max results")
    search_parser.add_argument("--json", action="store_true", help="Output raw JSON result")

    # Timeline and thread subcommands
    timeline_parser = subparsers.add_parser("timeline", help="Show stored posts, newest first")
    _add_db_argument(timeline_parser)
    timeline_parser.add_argument("--account", type=str, help="Filter by account id")
    timeline_parser.add_argument("--limit", type=int, default=20, help="Max posts")
    timeline_parser.add_argument("--offset", type=int, default=0, help="Posts to skip")
    timeline_parser.add_argument("--json", action="store_true", help="Output raw JSON result")

    thread_parser = subparsers.add_parser("thread", help="Show a post with its ancestors and replies")
    thread_parser.add_argument("account_id", type=str, help="Account id (actor URI)")
    thread_parser.add_argument("post_id", type=str, help="Post id")
    _add_db_argument(thread_parser)
    thread_parser.add_argument("--json", action="store_true", help="Output raw JSON result")

    interactions_parser = subparsers.add_parser(
        "interactions", help="Show stored likes or bookmarks, newest first"
    )
    interactions_parser.add_argument("kind", choices=["likes", "bookmarks"], help="Which list to show")
    _add_db_argument(interactions_parser)
    interactions_parser.add_argument("--account", type=str, help="Filter by account id")
    interactions_parser.add_argument("--limit", type=int, default=20, help="Max entries")
    interactions_parser.add_argument("--offset", type=int, default=0, help="Entries to skip")
    interactions_parser.add_argument("--json", action="store_true", help="Output raw JSON result")

    # Config subcommand
    config_parser = subparsers.add_parser("config", help="Show or change settings")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_subparsers.add_parser("show", help="Show current configuration")
    config_set_parser = config_subparsers.add_parser("set", help="Set a configuration value")
    config_set_parser.add_argument("key", type=str, help="Setting name")
    config_set_parser.add_argument("value", type=str, help="Setting value")

    # Parse arguments
    args = parser.parse_args()
    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    # Handle import-archive command
    if args.command == "import-archive":
        try:
            strategy = args.strategy or get_import_strategy()
            show_progress = not (args.quiet or args.json)
            summary = import_archive(
                _resolve_db(args.db),
                args.path,
                on_conflict=_conflict_resolver(strategy),
                on_progress=_print_progress if show_progress else None,
            )
            if args.json:
                print(json.dumps(summary.to_dict(), indent=2))
            else:
                verb = "Imported" if summary.is_new_account else f"Updated ({summary.strategy.value})"
                print(f"✅ {verb} @{summary.username} from {summary.file_name}")
                for key, value in summary.counts.items():
                    print(f"{key}: {value} (stored: {summary.totals.get(key, value)})")
                skipped = sum(summary.skipped.values())
                if skipped:
                    print(f"skipped: {skipped}")
        except Exception as e:
            print(f"❌ Error importing archive: {str(e)}")
        return

    # Handle accounts command
    if args.command == "accounts":
        try:
            store = _open_store(args.db)
            with store.session:
                accounts = store.list_accounts()
                payload = [
                    {
                        "account_id": account.account_id,
                        "username": account.username,
                        "display_name": account.display_name,
                        "posts": account.posts_count,
                        "likes": account.likes_count,
                        "bookmarks": account.bookmarks_count,
                        "imported_at": _format_timestamp(account.imported_at),
                        "last_updated_at": _format_timestamp(account.last_updated_at),
                    }
                    for account in accounts
                ]
            if args.json:
                print(json.dumps(payload, indent=2))
            elif not payload:
                print("No accounts imported yet.")
            else:
                for row in payload:
                    print(f"@{row['username']} ({row['display_name']})")
                    print(f"  ID: {row['account_id']}")
                    print(f"  Posts: {row['posts']}  Likes: {row['likes']}  Bookmarks: {row['bookmarks']}")
                    print(f"  Last updated: {row['last_updated_at']}")
        except Exception as e:
            print(f"❌ Error listing accounts: {str(e)}")
        return

    # Handle delete-account command
    if args.command == "delete-account":
        try:
            store = _open_store(args.db)
            with store.session:
                deleted = store.delete_account(args.account_id)
            if deleted:
                print(f"✅ Deleted account {args.account_id}")
            else:
                print(f"Account '{args.account_id}' not found.")
        except Exception as e:
            print(f"❌ Error deleting account: {str(e)}")
        return

    # Handle history command
    if args.command == "history":
        try:
            store = _open_store(args.db)
            with store.session:
                records = [
                    {
                        "imported_at": _format_timestamp(record.imported_at),
                        "file_name": record.file_name,
                        "file_size": record.file_size,
                        "strategy": record.strategy,
                        "posts": record.posts,
                        "likes": record.likes,
                        "bookmarks": record.bookmarks,
                        "media": record.media,
                    }
                    for record in store.import_history(args.account_id)
                ]
            if args.json:
                print(json.dumps(records, indent=2))
            elif not records:
                print("No imports found.")
            else:
                for record in records:
                    print(
                        f"{record['imported_at']} {record['strategy']} {record['file_name']}: "
                        f"{record['posts']} posts, {record['likes']} likes, "
                        f"{record['bookmarks']} bookmarks, {record['media']} media"
                    )
        except Exception as e:
            print(f"❌ Error reading import history: {str(e)}")
        return

    # Handle search command
    if args.command == "search":
        try:
            since = _parse_date(args.since, flag="--since")
            until = _parse_date(args.until, flag="--until")
            results = search_posts_in_db(
                _resolve_db(args.db),
                query=args.query,
                account=args.account,
                since=since,
                until=until,
                limit=args.limit,
            )
            if args.json:
                print(json.dumps(search_results_payload(results), indent=2))
            else:
                if not results:
                    print("No results found.")
                    return
                for result in results:
                    print(f"Post ID: {result.post_id}")
                    print(
                        "Owner: "
                        f"@{result.owner.username} "
                        f"({result.owner.display_name})"
                    )
                    print(f"Published: {_format_timestamp(result.published_at)}")
                    print(f"Text: {result.content_text}")
                    print("-" * 50)
        except Exception as e:
            print(f"❌ Error searching posts: {str(e)}")
        return

    # Handle timeline command
    if args.command == "timeline":
        try:
            store = _open_store(args.db)
            with store.session as session:
                posts = list_posts(
                    session, account_id=args.account, limit=args.limit, offset=args.offset
                )
                if args.json:
                    print(json.dumps([post_to_dict(post) for post in posts], indent=2))
                elif not posts:
                    print("No posts found.")
                else:
                    for post in posts:
                        _print_post(post)
        except Exception as e:
            print(f"❌ Error reading timeline: {str(e)}")
        return

    # Handle thread command
    if args.command == "thread":
        try:
            store = _open_store(args.db)
            with store.session as session:
                thread = get_thread(session, args.account_id, args.post_id)
                if thread is None:
                    print(f"Post '{args.post_id}' not found.")
                    return
                if args.json:
                    payload = {
                        "post": post_to_dict(thread.post),
                        "ancestors": [post_to_dict(post) for post in thread.ancestors],
                        "replies": [post_to_dict(post) for post in thread.replies],
                    }
                    print(json.dumps(payload, indent=2))
                else:
                    for post in thread.ancestors:
                        _print_post(post)
                    print(">>>")
                    _print_post(thread.post)
                    for post in thread.replies:
                        _print_post(post)
        except Exception as e:
            print(f"❌ Error reading thread: {str(e)}")
        return

    # Handle interactions command
    if args.command == "interactions":
        try:
            store = _open_store(args.db)
            list_rows = list_likes if args.kind == "likes" else list_bookmarks
            with store.session as session:
                rows = [
                    interaction_to_dict(row)
                    for row in list_rows(
                        session, account_id=args.account, limit=args.limit, offset=args.offset
                    )
                ]
            if args.json:
                print(json.dumps(rows, indent=2))
            elif not rows:
                print(f"No {args.kind} found.")
            else:
                for row in rows:
                    print(f"{row['saved_at'] or 'undated'} {row['target_author'] or 'unknown'}")
                    print(f"  {row['target_url']}")
        except Exception as e:
            print(f"❌ Error reading {args.kind}: {str(e)}")
        return

    # Handle config command
    if args.command == "config":
        if args.config_command == "show":
            show_config()
            return
        try:
            set_setting(args.key, args.value)
            print(f"✅ Saved {args.key}")
        except (ValueError, RuntimeError) as e:
            print(f"❌ {e}")
        return


if __name__ == "__main__":
    main()
