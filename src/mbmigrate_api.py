"""
Mbmigrate API Module

HTTP adapters for Emby and Jellyfin servers. Both implement the capability
contract from mbmigrate_service on top of a shared ApiClient that performs
the requests and turns transport and decoding failures into MigrationError
subclasses. The adapters differ in endpoint paths, authorization headers,
paging envelopes and filter vocabulary; everything else is shared by
BaseMediaClient.
"""

import copy
import os
from abc import abstractmethod
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

import requests
from pydantic import BaseModel, ValidationError

from src.mbmigrate_logging import logger
from src.mbmigrate_models import LibraryItem, SystemInfo, SystemLog, User, UserActivity, UserPolicy
from src.mbmigrate_service import (
    AdminKey,
    ApiKey,
    AuthorizationError,
    DecodingError,
    ItemFilter,
    MediaService,
    RecordCountError,
    TransportError,
)

CLIENT_NAME = "mbmigrate"
CLIENT_VERSION = "1.0.0"
DEFAULT_TIMEOUT = float(os.environ.get("MBMIGRATE_TIMEOUT", "30"))

PROVIDER_IDS_FIELD = "ProviderIds"

ModelT = TypeVar("ModelT", bound=BaseModel)
Credential = Union[ApiKey, AdminKey, None]


def decode_model(model: Type[ModelT], data: Any, operation: str, identifier: Optional[str] = None) -> ModelT:
    """
    Validate a decoded JSON value into a model.

    Raises:
        DecodingError: If the value does not fit the model
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise DecodingError(
            f"unexpected {model.__name__} payload ({e.error_count()} validation errors)",
            operation, identifier,
        ) from e


def decode_list(model: Type[ModelT], data: Any, operation: str, identifier: Optional[str] = None) -> List[ModelT]:
    """Validate a JSON array into a list of models."""
    if not isinstance(data, list):
        raise DecodingError(f"expected a list of {model.__name__}", operation, identifier)
    return [decode_model(model, row, operation, identifier) for row in data]


def decode_query(model: Type[ModelT], data: Any, operation: str, identifier: Optional[str] = None,
                 check_count: bool = True) -> List[ModelT]:
    """
    Validate a paged ``{"Items": [...], "TotalRecordCount": n}`` envelope.

    Raises:
        DecodingError: If the envelope is malformed
        RecordCountError: If ``check_count`` and the server reports no records
    """
    if not isinstance(data, dict):
        raise DecodingError("expected a paged query result", operation, identifier)

    if check_count:
        count = data.get("TotalRecordCount")
        if not isinstance(count, int) or count <= 0:
            raise RecordCountError(f"invalid record count: {count}", operation, identifier)

    return decode_list(model, data.get("Items") or [], operation, identifier)


class ApiClient:
    """
    Handles HTTP communication with Emby and Jellyfin servers.

    Provides a single request path with timeout management and error
    translation. Unlike a best-effort client, every failure is raised: a
    migration must stop at the first request that does not succeed.
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Initialize the API client.

        Args:
            timeout: Request timeout in seconds for library and user calls
        """
        self.timeout_short = 10  # Health checks and server info
        self.timeout_long = timeout or DEFAULT_TIMEOUT

    def make_request(self, url: str, headers: Dict[str, str], method: str = "GET",
                     params: Optional[Dict[str, Any]] = None,
                     json_data: Optional[Any] = None,
                     timeout: Optional[float] = None,
                     operation: Optional[str] = None,
                     expect_json: bool = True) -> Any:
        """
        Make an API request to the media server.

        Args:
            url: The full URL for the API endpoint
            headers: Request headers including authorization
            method: HTTP method (GET, POST, DELETE)
            params: URL parameters for the request
            json_data: JSON body for POST requests
            timeout: Request timeout in seconds (uses the long timeout if None)
            operation: Name of the capability call, used in error context
            expect_json: Decode the body as JSON; otherwise return raw bytes

        Returns:
            Any: Decoded JSON (None for empty bodies) or raw bytes

        Raises:
            TransportError: On connection failures, timeouts and HTTP errors
            DecodingError: If a JSON body was expected but could not be parsed
        """
        if timeout is None:
            timeout = self.timeout_long

        try:
            if method == "GET":
                response = requests.get(url, headers=headers, params=params, timeout=timeout)
            elif method == "POST":
                response = requests.post(url, headers=headers, params=params, json=json_data, timeout=timeout)
            elif method == "DELETE":
                response = requests.delete(url, headers=headers, params=params, timeout=timeout)
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")

            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            self._handle_http_error(e, url, operation)
        except requests.exceptions.Timeout as e:
            raise TransportError(f"connection to {url} timed out after {timeout}s", operation, url) from e
        except requests.exceptions.ConnectionError as e:
            raise TransportError(f"could not connect to {url}", operation, url) from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"request error: {e}", operation, url) from e

        if not expect_json:
            return response.content

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise DecodingError(f"response from {url} is not valid JSON", operation, url) from e

    def _handle_http_error(self, error: requests.exceptions.HTTPError, url: str,
                           operation: Optional[str]) -> None:
        """
        Translate an HTTP error into a TransportError with a readable message.

        Args:
            error: The HTTP error that occurred
            url: The URL that was requested
            operation: Name of the capability call
        """
        status_code = error.response.status_code if error.response is not None else None

        if status_code in (401, 403):
            message = "authentication error: invalid API key or insufficient permissions"
        elif status_code == 404:
            message = f"API endpoint not found: {url}"
        else:
            message = f"HTTP error: {error}"

        if error.response is not None:
            logger.debug(f"Response body from {url}: {error.response.text}")

        raise TransportError(message, operation, url, status_code=status_code) from error


class BaseMediaClient(MediaService):
    """
    Shared implementation of the capability contract for MediaBrowser servers.

    Emby and Jellyfin descend from the same code base and agree on most
    endpoints and payloads. Subclasses provide the authorization headers,
    the base path, the filter vocabulary and the calls whose envelopes differ.

    A client is a value: it is built with a base ApiKey and never mutated.
    with_admin_key() returns a copy carrying an AdminKey, which elevated calls
    require.
    """

    server_type = ""
    base_path = ""
    ping_method = "GET"
    fields_param = "Fields"
    recursive_param = "Recursive"
    filter_names: Dict[ItemFilter, str] = {}

    def __init__(self, hostname: str, api_key: ApiKey, timeout: Optional[float] = None):
        """
        Initialize the adapter.

        Args:
            hostname: Base URL of the server, e.g. http://localhost:8096
            api_key: Base credential for reads
            timeout: Request timeout in seconds
        """
        self.hostname = hostname.rstrip("/") + self.base_path
        self.api_key = api_key
        self.api_client = ApiClient(timeout)
        self._admin_key: Optional[AdminKey] = None

    def __repr__(self) -> str:
        elevated = ", admin" if self._admin_key else ""
        return f"{type(self).__name__}({self.hostname!r}{elevated})"

    @property
    def admin_key(self) -> Optional[AdminKey]:
        return self._admin_key

    def with_admin_key(self, admin_key: AdminKey) -> "BaseMediaClient":
        if not isinstance(admin_key, AdminKey):
            raise AuthorizationError("an AdminKey is required", operation="with_admin_key")
        client = copy.copy(self)
        client._admin_key = admin_key
        return client

    def _require_admin(self, operation: str) -> AdminKey:
        if self._admin_key is None:
            raise AuthorizationError(
                "administrator credentials required", operation=operation, identifier=self.hostname
            )
        return self._admin_key

    @abstractmethod
    def _headers(self, credential: Credential) -> Dict[str, str]:
        """Authorization headers for a request made with ``credential``."""

    def _request(self, method: str, endpoint: str, operation: str,
                 credential: Credential = None,
                 params: Optional[Dict[str, Any]] = None,
                 json_data: Optional[Any] = None,
                 timeout: Optional[float] = None,
                 expect_json: bool = True) -> Any:
        url = f"{self.hostname}{endpoint}"
        headers = self._headers(credential)
        if json_data is not None:
            headers["Content-Type"] = "application/json"
        logger.debug(f"{self.server_type}: {method} {url} params={params}")
        return self.api_client.make_request(
            url, headers, method=method, params=params, json_data=json_data,
            timeout=timeout, operation=operation, expect_json=expect_json,
        )

    def _auth_client_fields(self) -> str:
        return (
            f'Client="{CLIENT_NAME}", Device="{CLIENT_NAME}", '
            f'DeviceId="{CLIENT_NAME}", Version="{CLIENT_VERSION}"'
        )

    # System

    def ping(self) -> None:
        self._request(self.ping_method, "/System/Ping", "ping",
                      timeout=self.api_client.timeout_short, expect_json=False)

    def version(self) -> str:
        return self.info(public=True).version or ""

    def info(self, public: bool = False) -> SystemInfo:
        endpoint = "/System/Info/Public" if public else "/System/Info"
        credential = None if public else self.api_key
        data = self._request("GET", endpoint, "info", credential, timeout=self.api_client.timeout_short)
        return decode_model(SystemInfo, data, "info")

    # Users

    def get_user(self, user_id: str) -> User:
        data = self._request("GET", f"/Users/{user_id}", "get_user", self.api_key)
        return decode_model(User, data, "get_user", user_id)

    def create_user(self, name: str) -> User:
        key = self._require_admin("create_user")
        data = self._request("POST", "/Users/New", "create_user", key, json_data={"Name": name})
        return decode_model(User, data, "create_user", name)

    def delete_user(self, user_id: str) -> None:
        key = self._require_admin("delete_user")
        self._request("DELETE", f"/Users/{user_id}", "delete_user", key)

    def update_user(self, user_id: str, user: User) -> None:
        key = self._require_admin("update_user")
        self._request("POST", f"/Users/{user_id}", "update_user", key, json_data=user.to_payload())

    def update_policy(self, user_id: str, policy: UserPolicy) -> None:
        key = self._require_admin("update_policy")
        self._request("POST", f"/Users/{user_id}/Policy", "update_policy", key,
                      json_data=policy.to_payload())

    def _authenticate_by_name(self, username: str, password: str, operation: str) -> Dict[str, Any]:
        data = self._request("POST", "/Users/AuthenticateByName", operation,
                             json_data={"Username": username, "Pw": password})
        if not isinstance(data, dict) or not data.get("AccessToken"):
            raise DecodingError("authentication response has no access token", operation, username)
        return data

    def authenticate(self, username: str, password: str) -> ApiKey:
        data = self._authenticate_by_name(username, password, "authenticate")
        return ApiKey(data["AccessToken"])

    def authenticate_admin(self, username: str, password: str) -> AdminKey:
        data = self._authenticate_by_name(username, password, "authenticate_admin")
        user = decode_model(User, data.get("User"), "authenticate_admin", username)
        return AdminKey.from_authentication(data["AccessToken"], user)

    # Library

    def _items_endpoint(self, user_id: Optional[str]) -> str:
        return "/Items"

    def _item_params(self, filters: Optional[Dict[str, str]], recursive: bool,
                     user_id: Optional[str]) -> Dict[str, Any]:
        params: Dict[str, Any] = dict(filters or {})

        # Always include the provider IDs in each returned item
        fields = params.get(self.fields_param)
        if not fields:
            params[self.fields_param] = PROVIDER_IDS_FIELD
        elif PROVIDER_IDS_FIELD not in fields:
            params[self.fields_param] = f"{fields},{PROVIDER_IDS_FIELD}"

        if recursive:
            params[self.recursive_param] = "true"
        return params

    def get_items(self, filters: Optional[Dict[str, str]] = None, recursive: bool = True) -> List[LibraryItem]:
        params = self._item_params(filters, recursive, None)
        data = self._request("GET", self._items_endpoint(None), "get_items", self.api_key, params=params)
        return decode_query(LibraryItem, data, "get_items", check_count=False)

    def get_items_by_user(self, user_id: str, filters: Optional[Dict[str, str]] = None) -> List[LibraryItem]:
        # A parent container filter asks for direct children only
        parent_filter = self.get_item_filter_string(ItemFilter.PARENT_ID)
        recursive = not (filters and parent_filter in filters)
        params = self._item_params(filters, recursive, user_id)
        data = self._request("GET", self._items_endpoint(user_id), "get_items_by_user", self.api_key,
                             params=params)
        return decode_query(LibraryItem, data, "get_items_by_user", user_id, check_count=False)

    def update_item(self, item_id: str, item: LibraryItem) -> None:
        self._request("POST", f"/Items/{item_id}", "update_item", self.api_key, json_data=item.to_payload())

    def update_item_user_activity(self, item_id: str, user_id: str,
                                  old: Optional[UserActivity], new: UserActivity) -> None:
        self._request("POST", f"/Users/{user_id}/Items/{item_id}/UserData", "update_item_user_activity",
                      self.api_key, json_data=new.update_payload())

    def get_item_filter_string(self, item_filter: ItemFilter) -> str:
        try:
            return self.filter_names[item_filter]
        except KeyError:
            raise ValueError(f"invalid filter name: {item_filter}") from None


class EmbyApiClient(BaseMediaClient):
    """
    Adapter for Emby servers.

    Emby serves its API under ``/emby``, pings with POST, wraps user and log
    listings in paged envelopes whose record count is validated, and takes
    the user scope of library reads as a ``UserId`` query parameter.
    """

    server_type = "emby"
    base_path = "/emby"
    ping_method = "POST"
    filter_names = {
        ItemFilter.FILTERS: "Filters",
        ItemFilter.IS_PLAYED: "IsPlayed",
        ItemFilter.IS_FOLDER: "IsFolder",
        ItemFilter.IS_NOT_FOLDER: "IsNotFolder",
        ItemFilter.PARENT_ID: "ParentId",
    }

    def _headers(self, credential: Credential) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "X-Emby-Authorization": f"Emby {self._auth_client_fields()}",
        }
        if credential is not None:
            headers["X-Emby-Token"] = credential.token
        return headers

    def get_logs(self) -> List[SystemLog]:
        key = self._require_admin("get_logs")
        data = self._request("GET", "/System/Logs/Query", "get_logs", key)
        return decode_query(SystemLog, data, "get_logs")

    def get_log_file(self, name: str) -> bytes:
        key = self._require_admin("get_log_file")
        return self._request("GET", f"/System/Logs/{name}", "get_log_file", key, expect_json=False)

    def get_users(self, public: bool = False) -> List[User]:
        if public:
            data = self._request("GET", "/Users/Public", "get_users")
            return decode_list(User, data, "get_users")

        data = self._request("GET", "/Users/Query", "get_users", self.api_key)
        return decode_query(User, data, "get_users")

    def update_password(self, user_id: str, current_password: str, new_password: str,
                        reset: bool = False) -> None:
        key = self._require_admin("update_password")
        body = {
            "Id": user_id,
            "CurrentPw": current_password,
            "NewPw": new_password,
            "ResetPassword": reset,
        }
        self._request("POST", f"/Users/{user_id}/Password", "update_password", key, json_data=body)

    def _item_params(self, filters: Optional[Dict[str, str]], recursive: bool,
                     user_id: Optional[str]) -> Dict[str, Any]:
        params = super()._item_params(filters, recursive, user_id)
        if user_id:
            params["UserId"] = user_id
        return params


class JellyfinApiClient(BaseMediaClient):
    """
    Adapter for Jellyfin servers.

    Jellyfin returns users and logs as plain lists, serves user-scoped
    library reads under ``/Users/{id}/Items`` and uses camelCase query
    parameters. Password changes always reset the password first, since
    Jellyfin refuses to set a new password over an existing one otherwise.
    """

    server_type = "jellyfin"
    fields_param = "fields"
    recursive_param = "recursive"
    filter_names = {
        ItemFilter.FILTERS: "filters",
        ItemFilter.IS_PLAYED: "IsPlayed",
        ItemFilter.IS_FOLDER: "IsFolder",
        ItemFilter.IS_NOT_FOLDER: "IsNotFolder",
        ItemFilter.PARENT_ID: "parentId",
    }

    def _headers(self, credential: Credential) -> Dict[str, str]:
        authorization = f"MediaBrowser {self._auth_client_fields()}"
        if credential is not None:
            authorization += f', Token="{credential.token}"'
        return {
            "Accept": "application/json",
            "Authorization": authorization,
            "X-Emby-Authorization": authorization,
        }

    def get_logs(self) -> List[SystemLog]:
        key = self._require_admin("get_logs")
        data = self._request("GET", "/System/Logs", "get_logs", key)
        return decode_list(SystemLog, data, "get_logs")

    def get_log_file(self, name: str) -> bytes:
        key = self._require_admin("get_log_file")
        return self._request("GET", "/System/Logs/Log", "get_log_file", key,
                             params={"name": name}, expect_json=False)

    def get_users(self, public: bool = False) -> List[User]:
        if public:
            data = self._request("GET", "/Users/Public", "get_users")
        else:
            data = self._request("GET", "/Users", "get_users", self.api_key)
        return decode_list(User, data, "get_users")

    def update_password(self, user_id: str, current_password: str, new_password: str,
                        reset: bool = False) -> None:
        key = self._require_admin("update_password")
        endpoint = f"/Users/{user_id}/Password"
        self._request("POST", endpoint, "update_password", key, json_data={"ResetPassword": True})
        if reset:
            return

        body = {"CurrentPw": current_password, "NewPw": new_password}
        self._request("POST", endpoint, "update_password", key, json_data=body)

    def _items_endpoint(self, user_id: Optional[str]) -> str:
        return f"/Users/{user_id}/Items" if user_id else "/Items"


SERVER_TYPES: Dict[str, Type[BaseMediaClient]] = {
    EmbyApiClient.server_type: EmbyApiClient,
    JellyfinApiClient.server_type: JellyfinApiClient,
}


def create_client(server_type: str, url: str, api_key: str, timeout: Optional[float] = None) -> BaseMediaClient:
    """
    Build the adapter for a configured server.

    Args:
        server_type: "emby" or "jellyfin"
        url: Base URL of the server
        api_key: Base API key
        timeout: Request timeout in seconds

    Returns:
        BaseMediaClient: The adapter bound to the server
    """
    try:
        client_class = SERVER_TYPES[server_type.lower()]
    except KeyError:
        raise ValueError(f"Unsupported server type: {server_type}") from None
    return client_class(url, ApiKey(api_key), timeout=timeout)
