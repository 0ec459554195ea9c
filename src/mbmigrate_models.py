"""
Mbmigrate Models Module

Typed records for the users, system information and library items exposed by
Emby and Jellyfin servers. Both servers speak PascalCase JSON with largely the
same shapes, so a single set of models is shared by the two adapters. Fields
that are not modelled explicitly are kept on user and item records so that
read-modify-write calls (user, policy and item updates) do not drop server
state.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_pascal

MOVIE = "Movie"
SERIES = "Series"
SEASON = "Season"
EPISODE = "Episode"

PROVIDER_IMDB = "imdb"
PROVIDER_TMDB = "tmdb"
PROVIDER_TVDB = "tvdb"

# Provider IDs that are stripped from a policy copied between backends
BACKEND_POLICY_FIELDS = ("AuthenticationProviderId", "PasswordResetProviderId")


class MediaBrowserModel(BaseModel):
    """Base model mapping snake_case attributes onto the servers' PascalCase keys."""

    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize the record into the JSON body expected by the servers."""
        return self.model_dump(by_alias=True, exclude_none=True)


class SystemInfo(MediaBrowserModel):
    id: Optional[str] = None
    local_address: Optional[str] = None
    wan_address: Optional[str] = None
    server_name: Optional[str] = None
    version: Optional[str] = None
    operating_system: Optional[str] = None


class SystemLog(MediaBrowserModel):
    name: str
    size: int = 0
    date_created: Optional[str] = None
    date_modified: Optional[str] = None


class UserAccessSchedule(MediaBrowserModel):
    day_of_week: Literal[
        "Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday",
        "Saturday", "Everyday", "Weekday", "Weekend",
    ]
    start_hour: float = 0
    end_hour: float = 0


class UserPolicy(MediaBrowserModel):
    model_config = ConfigDict(extra="allow")

    is_administrator: bool = False
    is_hidden: bool = False
    is_hidden_remotely: bool = False
    is_disabled: bool = False
    max_parental_rating: Optional[int] = None
    blocked_tags: List[str] = Field(default_factory=list)
    enable_user_preference_access: bool = True
    access_schedules: List[UserAccessSchedule] = Field(default_factory=list)
    block_unrated_items: List[str] = Field(default_factory=list)
    enable_remote_control_of_other_users: bool = False
    enable_shared_device_control: bool = False
    enable_remote_access: bool = True
    enable_live_tv_management: bool = False
    enable_live_tv_access: bool = False
    enable_media_playback: bool = True
    enable_audio_playback_transcoding: bool = True
    enable_video_playback_transcoding: bool = True
    enable_playback_remuxing: bool = True
    enable_content_deletion: bool = False
    enable_content_downloading: bool = False
    enable_subtitle_management: bool = False
    enable_all_folders: bool = True
    enabled_folders: List[str] = Field(default_factory=list)
    enable_all_devices: bool = True
    enabled_devices: List[str] = Field(default_factory=list)
    enable_public_sharing: bool = False
    invalid_login_attempt_count: int = 0
    remote_client_bitrate_limit: int = 0
    simultaneous_stream_limit: int = 0
    authentication_provider_id: Optional[str] = None
    password_reset_provider_id: Optional[str] = None

    def portable_payload(self) -> Dict[str, Any]:
        """Policy body without the fields that name backend-specific providers."""
        payload = self.to_payload()
        for field in BACKEND_POLICY_FIELDS:
            payload.pop(field, None)
        return payload


class UserConfiguration(MediaBrowserModel):
    model_config = ConfigDict(extra="allow")

    audio_language_preference: Optional[str] = None
    play_default_audio_track: bool = True
    subtitle_language_preference: Optional[str] = None
    display_missing_episodes: bool = False
    subtitle_mode: Optional[Literal["Default", "Always", "OnlyForced", "None", "Smart"]] = None
    enable_local_password: bool = False
    ordered_views: List[str] = Field(default_factory=list)
    latest_items_excludes: List[str] = Field(default_factory=list)
    my_media_excludes: List[str] = Field(default_factory=list)
    hide_played_in_latest: bool = True
    remember_audio_selections: bool = True
    remember_subtitle_selections: bool = True
    enable_next_episode_auto_play: bool = True


class User(MediaBrowserModel):
    model_config = ConfigDict(extra="allow")

    name: str
    id: str
    server_id: Optional[str] = None
    server_name: Optional[str] = None
    primary_image_tag: Optional[str] = None
    has_password: bool = False
    has_configured_password: bool = False
    has_configured_easy_password: bool = False
    enable_auto_login: Optional[bool] = None
    last_login_date: Optional[str] = None
    last_activity_date: Optional[str] = None
    configuration: UserConfiguration = Field(default_factory=UserConfiguration)
    policy: UserPolicy = Field(default_factory=UserPolicy)
    primary_image_aspect_ratio: Optional[float] = None


class UserActivity(MediaBrowserModel):
    """
    Per-user playback state attached to a library item.

    Two activities match when favorite flag, played flag, play count,
    playback position and rating are all equal. Last played date and the
    container-only counters are informational.
    """

    playback_position_ticks: int = 0
    play_count: int = 0
    is_favorite: bool = False
    last_played_date: Optional[str] = None
    played: bool = False
    rating: Optional[float] = None
    # Series and Season only
    unplayed_item_count: Optional[int] = None
    played_percentage: Optional[float] = None

    def is_fully_played(self) -> bool:
        return self.played and self.played_percentage == 100

    def matches(self, other: "UserActivity") -> bool:
        return (
            self.is_favorite == other.is_favorite
            and self.played == other.played
            and self.play_count == other.play_count
            and self.playback_position_ticks == other.playback_position_ticks
            and self.rating == other.rating
        )

    def as_played(self) -> "UserActivity":
        """Copy of this activity marked played, keeping favorite and rating."""
        return self.model_copy(update={
            "played": True,
            "playback_position_ticks": 0,
            "play_count": max(self.play_count, 1),
        })

    def describe_changes(self, new: "UserActivity") -> str:
        """Human readable before -> after summary of the compared fields."""
        return (
            f"played: {self.played} -> {new.played}, "
            f"favorite: {self.is_favorite} -> {new.is_favorite}, "
            f"play count: {self.play_count} -> {new.play_count}, "
            f"ticks: {self.playback_position_ticks} -> {new.playback_position_ticks}, "
            f"rating: {self.rating} -> {new.rating}"
        )

    def update_payload(self) -> Dict[str, Any]:
        """Body for a user data update; container counters are server-computed."""
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"unplayed_item_count", "played_percentage"},
        )


class LibraryItem(MediaBrowserModel):
    """
    A single library item as returned for a specific user.

    Only a subset of the servers' item fields is tracked. Provider IDs are
    flattened into ``imdb_id``/``tmdb_id``/``tvdb_id`` when the record is
    decoded; the lookup is case-insensitive because the servers disagree on
    the casing of provider names.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    server_id: Optional[str] = None
    run_time_ticks: Optional[int] = None
    is_folder: bool = False
    type: str = ""
    user_data: Optional[UserActivity] = None
    media_type: Optional[str] = None

    provider_ids: Dict[str, Any] = Field(default_factory=dict)
    imdb_id: Optional[str] = Field(default=None, exclude=True)
    tmdb_id: Optional[str] = Field(default=None, exclude=True)
    tvdb_id: Optional[str] = Field(default=None, exclude=True)

    # Season and Episode only
    series_id: Optional[str] = None
    series_name: Optional[str] = None
    season_id: Optional[str] = None
    index_number: Optional[int] = None
    parent_index_number: Optional[int] = None

    @model_validator(mode="after")
    def _flatten_provider_ids(self) -> "LibraryItem":
        for provider, value in self.provider_ids.items():
            value = str(value).strip() if value is not None else ""
            if not value:
                continue
            name = provider.lower()
            if name == PROVIDER_IMDB:
                self.imdb_id = value
            elif name == PROVIDER_TMDB:
                self.tmdb_id = value
            elif name == PROVIDER_TVDB:
                self.tvdb_id = value
        return self

    def known_provider_ids(self) -> List[str]:
        """Available IMDb, TMDB and TVDB IDs, in that order."""
        return [pid for pid in (self.imdb_id, self.tmdb_id, self.tvdb_id) if pid]

    def activity(self) -> UserActivity:
        return self.user_data or UserActivity()
