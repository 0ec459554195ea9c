"""
Mbmigrate Logging Module

Provides standardized logging functionality for the Mbmigrate application.
Implements consistent log formatting for user and watch-history migrations,
enabling better tracking and troubleshooting of migration runs.
"""

import logging
import os
from datetime import datetime
from typing import Optional

# Configure logging with a clean format focused on the message content
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

logger = logging.getLogger("mbmigrate")

def _format_timestamp() -> str:
    """
    Generate a formatted timestamp for log messages.

    Returns:
        str: Current timestamp in YYYY-MM-DD HH:MM:SS format
    """
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

def log_user_migration(
    source_server: str,
    target_server: str,
    success: bool,
    created_count: int = 0,
    deleted_count: int = 0,
    dry_run: bool = False,
    error: Optional[str] = None
) -> None:
    """
    Log user migration details in a structured, consistent format.

    Creates standardized log entries for user reconciliation between a
    source and a target server. Tracks how many users were created and
    deleted on the target so that each run leaves a single summary line.

    Args:
        source_server: Name of the server users are read from
        target_server: Name of the server users are created on / deleted from
        success: Whether the migration completed
        created_count: Number of users created on the target
        deleted_count: Number of users deleted from the target
        dry_run: Whether the run only computed changes
        error: Error message if the migration failed
    """
    timestamp = _format_timestamp()
    status = "SUCCESS" if success else "FAILED"
    mode = " (DRY RUN)" if dry_run else ""

    if success:
        logger.info(
            f"[{timestamp}] USERS {status}{mode} | Source: {source_server} | "
            f"Target: {target_server} | "
            f"Created: {created_count} | Deleted: {deleted_count}"
        )
    else:
        logger.error(
            f"[{timestamp}] USERS {status} | Source: {source_server} | "
            f"Target: {target_server} | Error: {error or 'Unknown error'}"
        )

def log_migration_operation(
    source_server: str,
    target_server: str,
    username: str,
    success: bool,
    updated_count: int = 0,
    unchanged_count: int = 0,
    unmatched_count: int = 0,
    declined_count: int = 0,
    dry_run: bool = False,
    error: Optional[str] = None
) -> None:
    """
    Log watch-history migration details in a structured, consistent format.

    Records how many target items were updated, already matched the source,
    had no counterpart in the source index, or were declined at the
    confirmation prompt. Failed runs still report the counts reached before
    the failure, since a migration aborts on the first error.

    Args:
        source_server: Name of the server watch state is read from
        target_server: Name of the server watch state is written to
        username: Display name of the migrated user
        success: Whether the migration completed
        updated_count: Number of items whose user activity was pushed
        unchanged_count: Number of matched items already equivalent
        unmatched_count: Number of target items with no source match
        declined_count: Number of updates declined interactively
        dry_run: Whether the run only computed changes
        error: Error message if the migration failed
    """
    timestamp = _format_timestamp()
    status = "SUCCESS" if success else "FAILED"
    mode = " (DRY RUN)" if dry_run else ""
    counts = (
        f"Updated: {updated_count} | Unchanged: {unchanged_count} | "
        f"Unmatched: {unmatched_count} | Declined: {declined_count}"
    )

    if success:
        logger.info(
            f"[{timestamp}] MIGRATE {status}{mode} | Source: {source_server} | "
            f"Target: {target_server} | User: {username} | {counts}"
        )
    else:
        logger.error(
            f"[{timestamp}] MIGRATE {status} | Source: {source_server} | "
            f"Target: {target_server} | User: {username} | {counts} | "
            f"Error: {error or 'Unknown error'}"
        )
