"""
Unit tests for the mbmigrate_models module.

Tests decoding of server records, provider ID flattening and the user
activity comparison rules.
"""

import unittest

from pydantic import ValidationError

from src.mbmigrate_models import (
    EPISODE,
    LibraryItem,
    User,
    UserActivity,
    UserPolicy,
)


class TestUserActivity(unittest.TestCase):
    """Test cases for the UserActivity model."""

    def setUp(self):
        self.watched = UserActivity(played=True, play_count=2, is_favorite=True, rating=8.0)
        self.unwatched = UserActivity(playback_position_ticks=1200)

    def test_matches_is_reflexive(self):
        self.assertTrue(self.watched.matches(self.watched))
        self.assertTrue(self.unwatched.matches(self.unwatched))

    def test_matches_is_symmetric(self):
        self.assertEqual(self.watched.matches(self.unwatched), self.unwatched.matches(self.watched))
        self.assertFalse(self.watched.matches(self.unwatched))

    def test_matches_ignores_informational_fields(self):
        other = self.watched.model_copy(update={
            "last_played_date": "2024-01-01T00:00:00Z",
            "played_percentage": 100,
            "unplayed_item_count": 0,
        })
        self.assertTrue(self.watched.matches(other))

    def test_each_compared_field_breaks_match(self):
        for field, value in [("played", False), ("play_count", 3), ("is_favorite", False),
                             ("playback_position_ticks", 5), ("rating", 1.0)]:
            with self.subTest(field=field):
                other = self.watched.model_copy(update={field: value})
                self.assertFalse(self.watched.matches(other))

    def test_is_fully_played(self):
        self.assertTrue(UserActivity(played=True, played_percentage=100).is_fully_played())
        self.assertFalse(UserActivity(played=True, played_percentage=50).is_fully_played())
        self.assertFalse(UserActivity(played=False, played_percentage=100).is_fully_played())
        self.assertFalse(UserActivity(played=True).is_fully_played())

    def test_as_played_keeps_favorite_and_rating(self):
        result = UserActivity(playback_position_ticks=900, is_favorite=True, rating=5.0).as_played()

        self.assertTrue(result.played)
        self.assertEqual(result.playback_position_ticks, 0)
        self.assertEqual(result.play_count, 1)
        self.assertTrue(result.is_favorite)
        self.assertEqual(result.rating, 5.0)

    def test_as_played_keeps_higher_play_count(self):
        self.assertEqual(UserActivity(play_count=4).as_played().play_count, 4)

    def test_describe_changes(self):
        summary = self.unwatched.describe_changes(self.watched)

        self.assertIn("played: False -> True", summary)
        self.assertIn("favorite: False -> True", summary)
        self.assertIn("ticks: 1200 -> 0", summary)

    def test_update_payload(self):
        payload = UserActivity(played=True, played_percentage=100, unplayed_item_count=0).update_payload()

        self.assertEqual(payload["Played"], True)
        self.assertNotIn("PlayedPercentage", payload)
        self.assertNotIn("UnplayedItemCount", payload)
        self.assertNotIn("Rating", payload)


class TestLibraryItem(unittest.TestCase):
    """Test cases for the LibraryItem model."""

    def test_decode_server_record(self):
        item = LibraryItem.model_validate({
            "Id": "abc",
            "Name": "Pilot",
            "Type": "Episode",
            "SeriesId": "s1",
            "IndexNumber": 1,
            "ParentIndexNumber": 2,
            "ProviderIds": {"Tvdb": "123"},
            "UserData": {"Played": True, "PlayCount": 1, "PlaybackPositionTicks": 0, "IsFavorite": False},
            "Overview": "kept as an extra field",
        })

        self.assertEqual(item.type, EPISODE)
        self.assertEqual(item.series_id, "s1")
        self.assertEqual(item.parent_index_number, 2)
        self.assertTrue(item.activity().played)
        self.assertEqual(item.tvdb_id, "123")

    def test_provider_ids_are_case_insensitive(self):
        item = LibraryItem(id="m", provider_ids={"IMDB": "tt1", "tmdb": 42, "Tvdb": " "})

        self.assertEqual(item.imdb_id, "tt1")
        self.assertEqual(item.tmdb_id, "42")
        self.assertIsNone(item.tvdb_id)

    def test_known_provider_ids_order(self):
        item = LibraryItem(id="m", provider_ids={"Tvdb": "3", "Tmdb": "2", "Imdb": "tt1"})

        self.assertEqual(item.known_provider_ids(), ["tt1", "2", "3"])

    def test_unrelated_provider_ids_are_ignored(self):
        item = LibraryItem(id="m", provider_ids={"MusicBrainzAlbum": "x"})

        self.assertEqual(item.known_provider_ids(), [])

    def test_activity_defaults(self):
        self.assertFalse(LibraryItem(id="m").activity().played)

    def test_flattened_ids_not_serialized(self):
        payload = LibraryItem(id="m", provider_ids={"Imdb": "tt1"}).to_payload()

        self.assertEqual(payload["ProviderIds"], {"Imdb": "tt1"})
        self.assertNotIn("ImdbId", payload)


class TestUser(unittest.TestCase):
    """Test cases for the User and UserPolicy models."""

    def test_decode_user(self):
        user = User.model_validate({
            "Name": "alice",
            "Id": "u1",
            "Policy": {"IsAdministrator": True, "AuthenticationProviderId": "Emby.Server"},
            "Configuration": {"SubtitleMode": "Smart"},
        })

        self.assertTrue(user.policy.is_administrator)
        self.assertEqual(user.configuration.subtitle_mode, "Smart")

    def test_decode_invalid_user(self):
        with self.assertRaises(ValidationError):
            User.model_validate({"Name": "alice"})

    def test_invalid_access_schedule(self):
        with self.assertRaises(ValidationError):
            UserPolicy.model_validate({"AccessSchedules": [{"DayOfWeek": "Someday"}]})

    def test_portable_payload(self):
        policy = UserPolicy(
            is_administrator=True,
            authentication_provider_id="Emby.Server",
            password_reset_provider_id="Emby.Reset",
        )
        payload = policy.portable_payload()

        self.assertTrue(payload["IsAdministrator"])
        self.assertNotIn("AuthenticationProviderId", payload)
        self.assertNotIn("PasswordResetProviderId", payload)

    def test_unknown_policy_fields_survive_round_trip(self):
        policy = UserPolicy.model_validate({"EnableSyncTranscoding": True})

        self.assertEqual(policy.to_payload()["EnableSyncTranscoding"], True)


if __name__ == '__main__':
    unittest.main()
