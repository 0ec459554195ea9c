"""
Mbmigrate Service Module

Defines the capability contract that every media server adapter implements,
the credentials used to call it and the errors it raises.

The contract is split into three groups (system, user and library) that the
migration engine depends on. Calls are synchronous: each either returns its
result or raises a MigrationError subclass.

Credentials come in two tiers. An ApiKey authorizes reads and self-service
calls; an AdminKey is required for user management and log access. AdminKey
is not an ApiKey and cannot be constructed directly: it is only issued from
an authentication whose user record carries the administrator policy.
"""

from abc import ABC, abstractmethod
from dataclasses import InitVar, dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from src.mbmigrate_models import LibraryItem, SystemInfo, SystemLog, User, UserActivity, UserPolicy


class MigrationError(Exception):
    """
    Base error for every failure surfaced by adapters and the migration engine.

    Carries the operation that failed and the identifier (user, item, URL)
    it was working on. When a migration run aborts, the engine attaches the
    partial MigrationReport reached so far as ``report``.
    """

    def __init__(self, message: str, operation: Optional[str] = None, identifier: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.identifier = identifier
        self.report = None

    def __str__(self) -> str:
        context = self.operation or ""
        if self.identifier:
            context = f"{context} [{self.identifier}]" if context else f"[{self.identifier}]"
        return f"{context}: {self.message}" if context else self.message


class TransportError(MigrationError):
    """Network failure, timeout or non-success HTTP status."""

    def __init__(self, message: str, operation: Optional[str] = None, identifier: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message, operation, identifier)
        self.status_code = status_code


class DecodingError(MigrationError):
    """Response body that is not JSON or does not fit the expected record."""


class NotFoundError(MigrationError):
    """User or item required by an operation does not exist."""


class RecordCountError(MigrationError):
    """Paged query reporting a zero or negative total record count."""


class AuthorizationError(MigrationError):
    """Elevated operation attempted without administrator credentials."""


class DeadlineExceededError(MigrationError):
    """Overall wall-clock limit for a migration elapsed."""


@dataclass(frozen=True)
class ApiKey:
    """Base credential: a server API key or a user access token."""

    token: str = field(repr=False)


_ADMIN_KEY_SEAL = object()


@dataclass(frozen=True)
class AdminKey:
    """Elevated credential issued to an administrator."""

    token: str = field(repr=False)
    user_id: Optional[str] = None
    seal: InitVar[object] = None

    def __post_init__(self, seal: object) -> None:
        if seal is not _ADMIN_KEY_SEAL:
            raise TypeError("AdminKey can only be issued by an administrator authentication")

    @classmethod
    def from_authentication(cls, token: str, user: User) -> "AdminKey":
        """
        Issue an AdminKey for an authenticated user.

        Raises:
            AuthorizationError: If the user's policy is not an administrator one
        """
        if not user.policy.is_administrator:
            raise AuthorizationError(
                "user is not an administrator", operation="authenticate_admin", identifier=user.name
            )
        return cls(token, user.id, _ADMIN_KEY_SEAL)


class ItemFilter(Enum):
    """Logical library filters, translated per backend by get_item_filter_string()."""

    FILTERS = "Filters"
    IS_PLAYED = "IsPlayed"
    IS_FOLDER = "IsFolder"
    IS_NOT_FOLDER = "IsNotFolder"
    PARENT_ID = "ParentId"


class SystemService(ABC):

    @abstractmethod
    def ping(self) -> None:
        """Health check; raises if the server does not answer."""

    @abstractmethod
    def version(self) -> str:
        """Server version string."""

    @abstractmethod
    def info(self, public: bool = False) -> SystemInfo:
        """Server information; only the publicly visible subset if ``public``."""

    @abstractmethod
    def get_logs(self) -> List[SystemLog]:
        """All log files exposed by the server."""

    @abstractmethod
    def get_log_file(self, name: str) -> bytes:
        """Content of a single log file."""


class UserService(ABC):

    @abstractmethod
    def get_users(self, public: bool = False) -> List[User]:
        """All users, or only the publicly visible ones if ``public``."""

    @abstractmethod
    def get_user(self, user_id: str) -> User:
        pass

    @abstractmethod
    def create_user(self, name: str) -> User:
        pass

    @abstractmethod
    def delete_user(self, user_id: str) -> None:
        pass

    @abstractmethod
    def update_user(self, user_id: str, user: User) -> None:
        """Overwrite a user's state; read it with get_user() first."""

    @abstractmethod
    def update_password(self, user_id: str, current_password: str, new_password: str,
                        reset: bool = False) -> None:
        """Change a user's password, or only reset it if ``reset``."""

    @abstractmethod
    def update_policy(self, user_id: str, policy: UserPolicy) -> None:
        """Overwrite a user's policy; read it with get_user() first."""

    @abstractmethod
    def authenticate(self, username: str, password: str) -> ApiKey:
        pass

    @abstractmethod
    def authenticate_admin(self, username: str, password: str) -> AdminKey:
        """Authenticate an administrator and issue an AdminKey."""


class LibraryService(ABC):

    @abstractmethod
    def get_items(self, filters: Optional[Dict[str, str]] = None, recursive: bool = True) -> List[LibraryItem]:
        """Library items matching the given backend filters, without user activity."""

    @abstractmethod
    def get_items_by_user(self, user_id: str, filters: Optional[Dict[str, str]] = None) -> List[LibraryItem]:
        """
        Library items visible to a user, with that user's activity attached.

        Reads are recursive unless a parent container filter is given, in
        which case only the container's direct children are returned.
        """

    @abstractmethod
    def update_item(self, item_id: str, item: LibraryItem) -> None:
        """Update item metadata; does not touch user activity."""

    @abstractmethod
    def update_item_user_activity(self, item_id: str, user_id: str,
                                  old: Optional[UserActivity], new: UserActivity) -> None:
        pass

    @abstractmethod
    def get_item_filter_string(self, item_filter: ItemFilter) -> str:
        pass


class MediaService(SystemService, UserService, LibraryService):
    """A bound server instance exposing all three capability groups."""

    @property
    def system(self) -> SystemService:
        return self

    @property
    def user(self) -> UserService:
        return self

    @property
    def library(self) -> LibraryService:
        return self

    @abstractmethod
    def with_admin_key(self, admin_key: AdminKey) -> "MediaService":
        """Copy of this client that carries the given elevated credential."""


def get_user_by_name(service: UserService, username: str) -> User:
    """
    Find a user by display name.

    Raises:
        NotFoundError: If no user has that name
    """
    for user in service.get_users(public=False):
        if user.name == username:
            return user
    raise NotFoundError("user not found", operation="get_user_by_name", identifier=username)
