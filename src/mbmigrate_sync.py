"""
Mbmigrate Sync Module

Core functionality for migrating users and per-user watch history from one
Emby or Jellyfin server into another. The two servers assign unrelated IDs to
the same content, so items are joined on their external provider IDs
(IMDb, TMDB, TVDB) and users on their display names.

A watch-history migration builds an identity index from the source user's
library, walks the target user's library, resolves every item to a source
entry and pushes the source activity where the two disagree. Every step is a
blocking request and the first failure aborts the whole run; the partial
report is attached to the raised error.
"""

import difflib
import json
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from src.mbmigrate_api import SERVER_TYPES, create_client
from src.mbmigrate_logging import logger
from src.mbmigrate_models import (
    EPISODE,
    MOVIE,
    SEASON,
    SERIES,
    LibraryItem,
    User,
    UserActivity,
    UserPolicy,
)
from src.mbmigrate_service import (
    DeadlineExceededError,
    ItemFilter,
    LibraryService,
    MediaService,
    MigrationError,
    get_user_by_name,
)

CONFIG_FILE = os.environ.get("CONFIG_FILE", "mbmigrate_servers.json")

SUPPORTED_TYPES = (MOVIE, SERIES, SEASON, EPISODE)

# Identity key to the source item of each type carrying that key
IdentityIndex = Dict[str, Dict[str, LibraryItem]]

# User fields assigned by the server, ignored when comparing users
VOLATILE_USER_FIELDS = (
    "Id", "ServerId", "ServerName", "PrimaryImageTag", "LastLoginDate",
    "LastActivityDate", "PrimaryImageAspectRatio",
)


def identity_key(provider_id: str, *indexes: int) -> str:
    """
    Build the identity index key for an item.

    Movies and series are keyed by a provider ID alone, seasons by
    ``{providerId}-{season}`` and episodes by ``{providerId}-{season}-{episode}``.
    """
    return "-".join([provider_id] + [str(index) for index in indexes])


def ask_confirmation(prompt: str, default: bool = True) -> bool:
    """
    Ask a yes/no question on the terminal.

    Args:
        prompt: Question to display
        default: Answer used when the input is empty

    Returns:
        bool: True if the answer is affirmative
    """
    suffix = " [Y/n]: " if default else " [y/N]: "
    answer = input(prompt + suffix).strip().lower()
    if not answer:
        return default
    return answer in ("y", "yes")


@dataclass
class MigrationOptions:
    """Options for a MigrationDriver run."""

    interactive: bool = False
    dry_run: bool = False
    deadline_seconds: Optional[float] = None
    delete_missing_users: bool = True
    copy_policy: bool = False


@dataclass
class MigrationReport:
    """Progress of a migration; attached to the error when a run aborts."""

    operation: str
    username: Optional[str] = None
    created: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    total: int = 0
    updated: int = 0
    unchanged: int = 0
    unmatched: int = 0
    skipped: int = 0
    declined: int = 0

    @property
    def processed(self) -> int:
        return self.updated + self.unchanged + self.unmatched + self.skipped + self.declined

    def summary(self) -> str:
        if self.operation == "migrate_users":
            return (f"{len(self.created)} users created, {len(self.deleted)} deleted, "
                    f"{self.declined} declined")
        return (f"{self.processed} of {self.total} items processed: {self.updated} updated, "
                f"{self.unchanged} unchanged, {self.unmatched} unmatched, "
                f"{self.skipped} skipped, {self.declined} declined")


class Deadline:
    """Overall wall-clock limit for one top-level operation."""

    def __init__(self, seconds: Optional[float] = None):
        self.expires_at = time.monotonic() + seconds if seconds is not None else None

    def check(self, operation: str, identifier: Optional[str] = None) -> None:
        if self.expires_at is not None and time.monotonic() > self.expires_at:
            raise DeadlineExceededError("migration deadline exceeded", operation, identifier)


class IdentityIndexer:
    """
    Builds the identity index for one user's library on the source server.

    Movies are indexed under each of their provider IDs. A fully played series
    is indexed as a whole; otherwise its seasons are fetched and indexed, and
    a season that is not fully played in turn has its episodes fetched.
    Seasons and episodes carry no provider IDs of their own, so they are keyed
    by the provider IDs of their series. A series without any provider ID
    cannot be keyed and its descendants are not visited.

    Provider catalogs number movies and shows independently, so a movie and
    a series may carry the same key. Each key therefore holds one entry per
    item type.

    The walk uses an explicit stack, so its depth does not depend on the
    library, and issues one child read per container that is not fully played.
    """

    def __init__(self, library: LibraryService, user_id: str, deadline: Optional[Deadline] = None):
        """
        Initialize the indexer.

        Args:
            library: Library capability of the source server
            user_id: Source-side ID of the user whose activity is indexed
            deadline: Optional overall deadline checked before each step
        """
        self.library = library
        self.user_id = user_id
        self.deadline = deadline or Deadline()
        self.child_fetches = 0

    def build(self, items: Iterable[LibraryItem]) -> IdentityIndex:
        """
        Index the given top-level items.

        Seasons and episodes in ``items`` are ignored: they are reached, with
        their series' provider IDs, through the series they belong to.

        Returns:
            IdentityIndex: Identity key to the source items, by type, holding the activity
        """
        index: IdentityIndex = {}
        roots = [item for item in items if item.type in (MOVIE, SERIES)]
        stack: List[Tuple[LibraryItem, List[str], Optional[int]]] = [
            (item, item.known_provider_ids(), None) for item in reversed(roots)
        ]

        while stack:
            item, provider_ids, season_index = stack.pop()
            self.deadline.check("build_index", item.id)

            if not provider_ids:
                logger.debug(f"No provider IDs for {item.type} '{item.name}', not indexed")
                continue

            if item.type == MOVIE:
                self._insert(index, [identity_key(pid) for pid in provider_ids], item)

            elif item.type == SERIES:
                if item.activity().is_fully_played():
                    self._insert(index, [identity_key(pid) for pid in provider_ids], item)
                    continue
                seasons = self._children(item, SEASON)
                stack.extend((season, provider_ids, None) for season in reversed(seasons))

            elif item.type == SEASON:
                if item.index_number is None:
                    logger.debug(f"Season '{item.name}' has no index number, not indexed")
                    continue
                if item.activity().is_fully_played():
                    keys = [identity_key(pid, item.index_number) for pid in provider_ids]
                    self._insert(index, keys, item)
                    continue
                episodes = self._children(item, EPISODE)
                stack.extend((episode, provider_ids, item.index_number) for episode in reversed(episodes))

            elif item.type == EPISODE:
                season = item.parent_index_number if item.parent_index_number is not None else season_index
                if season is None or item.index_number is None:
                    logger.debug(f"Episode '{item.name}' has no season/episode number, not indexed")
                    continue
                keys = [identity_key(pid, season, item.index_number) for pid in provider_ids]
                self._insert(index, keys, item)

        logger.debug(f"Identity index built: {len(index)} keys, {self.child_fetches} child reads")
        return index

    def _children(self, parent: LibraryItem, child_type: str) -> List[LibraryItem]:
        filters = {self.library.get_item_filter_string(ItemFilter.PARENT_ID): parent.id}
        self.child_fetches += 1
        children = self.library.get_items_by_user(self.user_id, filters)
        return [child for child in children if child.type == child_type]

    @staticmethod
    def _insert(index: IdentityIndex, keys: List[str], item: LibraryItem) -> None:
        for key in keys:
            index.setdefault(key, {})[item.type] = item


def reconcile_users(source_users: List[User], target_users: List[User]) -> Tuple[List[User], List[User]]:
    """
    Compare two user lists by display name.

    Args:
        source_users: Users on the server being migrated from
        target_users: Users on the server being migrated into

    Returns:
        Tuple of (to_create, to_delete): source users missing on the target,
        and target users missing on the source
    """
    source_names = {user.name for user in source_users}
    target_names = {user.name for user in target_users}

    to_create = [user for user in source_users if user.name not in target_names]
    to_delete = [user for user in target_users if user.name not in source_names]
    return to_create, to_delete


def build_series_table(items: Iterable[LibraryItem]) -> Dict[str, List[str]]:
    """Map series IDs to their provider IDs for every series in ``items``."""
    return {item.id: item.known_provider_ids() for item in items if item.type == SERIES}


class WatchStateDiffer:
    """
    Resolves target items against the source identity index.

    Movies and series are looked up by their own provider IDs, in IMDb,
    TMDB, TVDB order. Seasons and episodes are looked up through the provider
    IDs of their series on the target.

    A series or season that was fully played on the source is indexed as a
    whole, so its seasons and episodes have no entries of their own. When the
    exact lookup of a season or episode misses, the enclosing season and then
    the series key are probed; a fully played container found that way marks
    the item played while keeping its own favorite flag and rating.
    """

    def __init__(self, index: IdentityIndex, target_items: Iterable[LibraryItem]):
        self.index = index
        self.series_provider_ids = build_series_table(target_items)

    def resolve(self, item: LibraryItem) -> Optional[UserActivity]:
        """
        Source activity the target item should have.

        Returns:
            Optional[UserActivity]: The desired activity, or None if the item
            has no counterpart in the index
        """
        if item.type in (MOVIE, SERIES):
            entry = self._probe([identity_key(pid) for pid in item.known_provider_ids()], item.type)
            return entry.activity() if entry else None

        if item.type not in (SEASON, EPISODE):
            return None

        provider_ids = self.series_provider_ids.get(item.series_id or "", [])
        if item.type == SEASON:
            season, episode = item.index_number, None
        else:
            season, episode = item.parent_index_number, item.index_number
        if not provider_ids or season is None:
            return None

        if item.type == EPISODE and episode is not None:
            entry = self._probe([identity_key(pid, season, episode) for pid in provider_ids], EPISODE)
            if entry:
                return entry.activity()

        entry = self._probe([identity_key(pid, season) for pid in provider_ids], SEASON)
        if entry and item.type == SEASON:
            return entry.activity()
        if entry and entry.activity().is_fully_played():
            return item.activity().as_played()

        entry = self._probe([identity_key(pid) for pid in provider_ids], SERIES)
        if entry and entry.activity().is_fully_played():
            return item.activity().as_played()
        return None

    def _probe(self, keys: List[str], item_type: str) -> Optional[LibraryItem]:
        for key in keys:
            entry = self.index.get(key, {}).get(item_type)
            if entry is not None:
                return entry
        return None


class MigrationDriver:
    """
    Migrates users and watch history from one server into another.

    Binds a source ("from") and a target ("into") server, each satisfying the
    capability contract. In interactive mode every overwrite of watch state
    and every user deletion is confirmed first; in dry-run mode the driver
    reports what it would change without writing.
    """

    def __init__(self, source: MediaService, target: MediaService,
                 options: Optional[MigrationOptions] = None,
                 confirm: Callable[[str, bool], bool] = ask_confirmation,
                 source_name: str = "source", target_name: str = "target"):
        """
        Initialize the migration driver.

        Args:
            source: Server to migrate from
            target: Server to migrate into
            options: Interactive, dry-run, deadline and user handling options
            confirm: Yes/no prompt used in interactive mode
            source_name: Display name of the source server for logs and diffs
            target_name: Display name of the target server for logs and diffs
        """
        self.source = source
        self.target = target
        self.options = options or MigrationOptions()
        self.confirm = confirm
        self.source_name = source_name
        self.target_name = target_name

    def migrate_users(self, passwords: Optional[Dict[str, str]] = None) -> MigrationReport:
        """
        Create users missing on the target and delete users absent from the source.

        Args:
            passwords: Optional password per user name, set on created users

        Returns:
            MigrationReport: Created and deleted user names
        """
        report = MigrationReport(operation="migrate_users")
        deadline = Deadline(self.options.deadline_seconds)

        try:
            source_users = self.source.user.get_users(public=False)
            target_users = self.target.user.get_users(public=False)
            to_create, to_delete = reconcile_users(source_users, target_users)
            logger.info(f"Users: {len(to_create)} to create, {len(to_delete)} to delete")

            for user in to_create:
                deadline.check("migrate_users", user.name)
                self._create_user(user, passwords or {}, report)

            if self.options.delete_missing_users:
                for user in to_delete:
                    deadline.check("migrate_users", user.name)
                    self._delete_user(user, report)
        except MigrationError as e:
            e.report = report
            raise

        return report

    def _create_user(self, user: User, passwords: Dict[str, str], report: MigrationReport) -> None:
        if self.options.dry_run:
            logger.info(f"Would create user {user.name}")
            report.created.append(user.name)
            return

        new_user = self.target.user.create_user(user.name)
        logger.info(f"Created user {new_user.name}: {new_user.id}")
        report.created.append(new_user.name)

        password = passwords.get(user.name)
        if password:
            self.target.user.update_password(new_user.id, "", password)

        if self.options.copy_policy:
            policy = UserPolicy.model_validate(user.policy.portable_payload())
            self.target.user.update_policy(new_user.id, policy)

    def _delete_user(self, user: User, report: MigrationReport) -> None:
        if self.options.interactive and not self.confirm(
                f"Delete user '{user.name}' from {self.target_name}?", False):
            report.declined += 1
            return

        if self.options.dry_run:
            logger.info(f"Would delete user {user.name}")
        else:
            self.target.user.delete_user(user.id)
            logger.info(f"Deleted user {user.name}")
        report.deleted.append(user.name)

    def diff_users(self, full: bool = False) -> str:
        """
        Textual diff of the users on both servers.

        Lines starting with ``-`` exist only on the source, lines starting
        with ``+`` only on the target. With ``full`` the users' configuration
        and policy are compared too.

        Returns:
            str: Unified diff, empty if both sides match
        """
        source_users = sorted(self.source.user.get_users(public=False), key=lambda u: u.name)
        target_users = sorted(self.target.user.get_users(public=False), key=lambda u: u.name)

        if full:
            source_lines = [line for user in source_users for line in self._user_document(user)]
            target_lines = [line for user in target_users for line in self._user_document(user)]
        else:
            source_lines = [user.name for user in source_users]
            target_lines = [user.name for user in target_users]

        diff = difflib.unified_diff(
            source_lines, target_lines,
            fromfile=self.source_name, tofile=self.target_name, lineterm="",
        )
        return "\n".join(diff)

    @staticmethod
    def _user_document(user: User) -> List[str]:
        payload: Dict[str, Any] = user.to_payload()
        for name in VOLATILE_USER_FIELDS:
            payload.pop(name, None)
        payload["Policy"] = user.policy.portable_payload()
        return json.dumps(payload, indent=2, sort_keys=True).splitlines()

    def migrate_user_watch_history(self, username: str) -> MigrationReport:
        """
        Make the target user's watch state match the source user's.

        Resolves the user on both servers, indexes the source library, then
        compares every item of the target library against the index and
        pushes the source activity where they differ.

        Args:
            username: Display name of the user on both servers

        Returns:
            MigrationReport: Per-item outcome counts

        Raises:
            NotFoundError: If the user is missing on either server
            MigrationError: On any other failure; ``report`` holds the progress
        """
        report = MigrationReport(operation="migrate_user_watch_history", username=username)
        deadline = Deadline(self.options.deadline_seconds)

        try:
            source_user = get_user_by_name(self.source.user, username)
            target_user = get_user_by_name(self.target.user, username)

            source_items = self.source.library.get_items_by_user(source_user.id)
            indexer = IdentityIndexer(self.source.library, source_user.id, deadline)
            index = indexer.build(source_items)

            target_items = self.target.library.get_items_by_user(target_user.id)
            differ = WatchStateDiffer(index, target_items)
            report.total = len(target_items)

            for item in target_items:
                deadline.check("migrate_user_watch_history", item.id)
                self._migrate_item(differ, item, target_user, report)
        except MigrationError as e:
            e.report = report
            raise

        logger.info(f"Watch history for {username}: {report.summary()}")
        return report

    def _migrate_item(self, differ: WatchStateDiffer, item: LibraryItem, target_user: User,
                      report: MigrationReport) -> None:
        if item.type not in SUPPORTED_TYPES:
            report.skipped += 1
            return

        desired = differ.resolve(item)
        if desired is None:
            logger.debug(f"No source match for {item.type} '{item.name}'")
            report.unmatched += 1
            return

        current = item.activity()
        if current.matches(desired):
            report.unchanged += 1
            return

        changes = current.describe_changes(desired)
        if self.options.interactive and not self.confirm(
                f"Update {item.type} '{item.name}' ({changes})?", True):
            report.declined += 1
            return

        if self.options.dry_run:
            logger.info(f"Would update {item.type} '{item.name}': {changes}")
        else:
            self.target.library.update_item_user_activity(item.id, target_user.id, current, desired)
            logger.info(f"Updated {item.type} '{item.name}': {changes}")
        report.updated += 1


class ConfigManager:
    """
    Manages configuration for media servers.

    Handles loading, saving and validating the servers stored in a JSON
    configuration file. Each entry holds the server type, URL, API key and
    optional administrator credentials used for user management.
    """

    def __init__(self, config_file: str = CONFIG_FILE):
        """
        Initialize the configuration manager.

        Args:
            config_file: Path to the configuration file
        """
        self.config_file = config_file

    def load_servers(self) -> Dict[str, Dict[str, Any]]:
        """
        Load servers from the config file.

        Returns:
            Dict[str, Dict[str, Any]]: Dictionary of configured servers
        """
        if not os.path.exists(self.config_file):
            return {}

        try:
            with open(self.config_file, "r") as f:
                servers = json.load(f)
        except json.JSONDecodeError as e:
            print(f"Error: {self.config_file} is not valid JSON, no servers loaded ({e})")
            return {}

        if not isinstance(servers, dict):
            print(f"Error: {self.config_file} must map server names to settings, no servers loaded")
            return {}
        return servers

    def save_servers(self, servers: Dict[str, Dict[str, Any]]) -> bool:
        """
        Save servers to the config file.

        Args:
            servers: Dictionary of servers to save

        Returns:
            bool: True if save was successful, False otherwise
        """
        try:
            with open(self.config_file, "w") as f:
                json.dump(servers, f, indent=4, sort_keys=True)
        except OSError as e:
            print(f"Error writing servers to {self.config_file}: {e}")
            return False

        print(f"Saved {len(servers)} server(s) to {self.config_file}.")
        return True

    def validate_server(self, server: Dict[str, Any]) -> bool:
        """
        Validate a server configuration.

        Args:
            server: Server configuration to validate

        Returns:
            bool: True if the configuration is usable, False otherwise
        """
        if not isinstance(server, dict):
            return False

        if server.get("type") not in SERVER_TYPES:
            print(f"Error: Server type must be one of: {', '.join(SERVER_TYPES)}")
            return False

        if not server.get("url") or not server.get("api_key"):
            print("Error: Server URL and API key are required")
            return False

        timeout = server.get("timeout")
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            print("Error: Timeout must be a positive number of seconds")
            return False

        return True


class MediaServerManager:
    """
    Manages configured media servers.

    Integrates the configuration manager with the API adapters: verifies new
    servers before storing them, builds connected clients (elevated when
    administrator credentials are configured) and creates migration drivers
    between two stored servers.
    """

    def __init__(self):
        """Initialize the media server manager with its configuration."""
        self.config_manager = ConfigManager()
        self.servers = self.config_manager.load_servers()

    def save_servers(self) -> bool:
        """
        Save the current server configuration to file.

        Returns:
            bool: True if save was successful, False otherwise
        """
        return self.config_manager.save_servers(self.servers)

    def add_server(self, name: str, url: str, api_key: str, server_type: str,
                   admin_username: Optional[str] = None, admin_password: Optional[str] = None,
                   timeout: Optional[float] = None) -> bool:
        """
        Add a media server after verifying the connection.

        Args:
            name: Name for the server
            url: Base URL of the server
            api_key: API key for authentication
            server_type: "emby" or "jellyfin"
            admin_username: Administrator used for user management
            admin_password: Password of the administrator
            timeout: Request timeout in seconds

        Returns:
            bool: True if the server was added, False otherwise
        """
        # Ensure URL has proper protocol
        if not url.startswith(('http://', 'https://')):
            url = 'http://' + url

        server: Dict[str, Any] = {"type": server_type.lower(), "url": url, "api_key": api_key}
        if admin_username:
            server["admin_username"] = admin_username
            server["admin_password"] = admin_password or ""
        if timeout is not None:
            server["timeout"] = timeout

        if not self.config_manager.validate_server(server):
            return False

        try:
            client = create_client(server["type"], url, api_key, timeout)
            client.ping()
            info = client.info(public=True)
            print(f"Successfully connected to {info.server_name or name} "
                  f"({server['type'].capitalize()} v{info.version or 'unknown'})")

            if admin_username:
                client.authenticate_admin(admin_username, admin_password or "")
                print(f"Authenticated as administrator {admin_username}")
        except MigrationError as e:
            print(f"Error connecting to {name}: {e}")
            return False

        self.servers[name] = server
        return True

    def remove_server(self, name: str) -> bool:
        if name not in self.servers:
            return False
        del self.servers[name]
        return True

    def connect(self, name: str) -> MediaService:
        """
        Build a client for a stored server.

        Returns:
            MediaService: Client carrying an AdminKey if administrator
            credentials are configured
        """
        server = self.servers[name]
        client = create_client(server["type"], server["url"], server["api_key"], server.get("timeout"))

        if server.get("admin_username"):
            admin_key = client.authenticate_admin(server["admin_username"], server.get("admin_password", ""))
            return client.with_admin_key(admin_key)
        return client

    def create_driver(self, source_name: str, target_name: str,
                      options: Optional[MigrationOptions] = None) -> MigrationDriver:
        """Connect to both servers and bind them in a MigrationDriver."""
        return MigrationDriver(
            self.connect(source_name),
            self.connect(target_name),
            options=options,
            source_name=source_name,
            target_name=target_name,
        )
