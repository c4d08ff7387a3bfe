#!/usr/bin/env python3
"""
Tests for the duel notification engine.

Tests cover:
1. Match lifecycle transitions (in_progress, pings, ended/completed)
2. Challenge / accept / decline / expire / dispute notifications
3. Verification outcomes
4. Deduplication and per-duel independence
5. Connection gating and malformed payloads
6. Preferences, direct senders and the debug surface

Usage:
    python -m pytest tests/unit/notification/test_service.py -v
"""

import threading
import unittest
from datetime import timedelta
from unittest.mock import Mock

from core.config_loader import NotificationPreferences
from notification.message_builder import MODERATOR_QUEUE
from notification.models import MatchStatus, NotificationType
from notification.service import NotificationService
from notification.transport import InMemoryTransport
from tests.mocks.duel_mocks import FakeClock, make_duel_record

USER_ID = "user-1"


def types_of(notifications):
    return [n.type for n in notifications]


class EngineTestCase(unittest.TestCase):
    """Fresh transport, clock and connected engine for every test."""

    def setUp(self):
        self.clock = FakeClock()
        self.transport = InMemoryTransport()
        self.service = self.make_service()
        self.service.start()

    def make_service(self, **kwargs):
        kwargs.setdefault('clock', self.clock)
        return NotificationService(transport=self.transport, user_id=USER_ID, **kwargs)

    def receive(self, kind="update", **record_fields):
        return self.service.receive_duel_payload({'new': make_duel_record(**record_fields)}, kind)


class TestMatchLifecycle(EngineTestCase):

    def test_in_progress_starts_monitoring(self):
        queued = self.receive(duel_id="d1", status="in_progress")

        self.assertEqual(types_of(queued), [NotificationType.MATCH_STARTED])
        state = self.service.active_match_notifications["d1"]
        self.assertEqual(state.status, MatchStatus.IN_PROGRESS)
        self.assertEqual(state.game_type, "Chess")
        self.assertEqual(state.start_time, self.clock.now)
        self.assertEqual(state.ping_count, 0)

        data = queued[0].data
        self.assertEqual(data.duel_id, "d1")
        self.assertEqual(data.challenger_id, USER_ID)
        self.assertEqual(data.opponent_id, "opponent-1")
        self.assertEqual(data.game_type, "Chess")
        self.assertEqual(queued[0].user_id, USER_ID)

    def test_duplicate_in_progress_is_absorbed(self):
        self.receive(duel_id="d1", status="in_progress")
        queued = self.receive(duel_id="d1", status="in_progress")

        self.assertEqual(queued, [])
        self.assertEqual(self.service.queue.count(type=NotificationType.MATCH_STARTED, duel_id="d1"), 1)

    def test_ping_sends_progress_and_updates_state(self):
        self.receive(duel_id="d1", status="in_progress")
        self.clock.advance(30)

        queued = self.receive(duel_id="d1", status="in_progress", action="ping")

        self.assertEqual(types_of(queued), [NotificationType.MATCH_PROGRESS])
        self.assertEqual(queued[0].data.ping_number, 1)
        state = self.service.active_match_notifications["d1"]
        self.assertEqual(state.ping_count, 1)
        self.assertEqual(state.last_ping_time, self.clock.now)

    def test_timeout_warning_sent_once_at_ping_limit(self):
        self.service = self.make_service(max_progress_pings=2)
        self.service.start()
        self.receive(duel_id="d1", status="in_progress")

        first = self.receive(duel_id="d1", status="in_progress", action="ping")
        second = self.receive(duel_id="d1", status="in_progress", action="ping")
        third = self.receive(duel_id="d1", status="in_progress", action="ping")

        self.assertEqual(types_of(first), [NotificationType.MATCH_PROGRESS])
        self.assertEqual(types_of(second), [NotificationType.MATCH_PROGRESS, NotificationType.MATCH_TIMEOUT])
        self.assertEqual(types_of(third), [NotificationType.MATCH_PROGRESS])
        self.assertEqual(self.service.queue.count(type=NotificationType.MATCH_TIMEOUT), 1)

    def test_ended_sends_match_ended_and_reminder(self):
        self.receive(duel_id="d1", status="in_progress")
        self.clock.advance(600)

        queued = self.receive(duel_id="d1", status="ended")

        self.assertEqual(
            types_of(queued),
            [NotificationType.MATCH_ENDED, NotificationType.VERIFICATION_REMINDER]
        )
        state = self.service.active_match_notifications["d1"]
        self.assertEqual(state.status, MatchStatus.ENDED)
        self.assertEqual(state.end_time, self.clock.now)

        ended, reminder = queued
        self.assertEqual(ended.expires_at, self.clock.now + timedelta(seconds=180))
        self.assertEqual(reminder.scheduled_for, self.clock.now + timedelta(seconds=120))
        self.assertEqual(reminder.expires_at, self.clock.now + timedelta(seconds=180))

    def test_completed_maps_to_ended(self):
        self.receive(duel_id="d1", status="in_progress")
        queued = self.receive(duel_id="d1", status="completed")

        self.assertIn(NotificationType.MATCH_ENDED, types_of(queued))
        self.assertEqual(self.service.active_match_notifications["d1"].status, MatchStatus.ENDED)

    def test_end_for_unknown_duel_creates_state(self):
        queued = self.receive(duel_id="late", status="ended")

        self.assertEqual(len(queued), 2)
        state = self.service.active_match_notifications["late"]
        self.assertEqual(state.status, MatchStatus.ENDED)
        self.assertEqual(state.end_time, self.clock.now)

    def test_terminal_state_is_idempotent(self):
        self.receive(duel_id="d1", status="in_progress")
        self.receive(duel_id="d1", status="ended")
        snapshot = self.service.active_match_notifications["d1"]
        pending_before = len(self.service.pending_notifications)

        self.clock.advance(60)
        self.assertEqual(self.receive(duel_id="d1", status="ended"), [])
        self.assertEqual(self.receive(duel_id="d1", status="completed"), [])
        self.assertEqual(self.receive(duel_id="d1", status="in_progress"), [])
        for status in ("declined", "expired", "cancelled", "accepted"):
            with self.subTest(status=status):
                self.assertEqual(self.receive(duel_id="d1", status=status), [])

        self.assertEqual(self.service.active_match_notifications["d1"], snapshot)
        self.assertEqual(len(self.service.pending_notifications), pending_before)

    def test_forfeited_match_ignores_later_closing_statuses(self):
        self.receive(duel_id="d1", status="in_progress")
        self.receive(duel_id="d1", status="in_progress", verification_status="forfeited")
        pending_before = len(self.service.pending_notifications)

        self.assertEqual(self.receive(duel_id="d1", status="declined"), [])
        self.assertEqual(self.receive(duel_id="d1", status="accepted"), [])

        self.assertEqual(self.service.active_match_notifications["d1"].status, MatchStatus.FORFEITED)
        self.assertEqual(len(self.service.pending_notifications), pending_before)

    def test_dispute_after_end_still_reaches_moderators(self):
        self.receive(duel_id="d1", status="in_progress")
        self.receive(duel_id="d1", status="ended")

        queued = self.receive(duel_id="d1", status="disputed", reason="Score mismatch")

        self.assertEqual(types_of(queued), [NotificationType.DISPUTE])
        self.assertEqual(queued[0].user_id, MODERATOR_QUEUE)

    def test_concurrent_duels_are_independent(self):
        self.receive(duel_id="A", status="in_progress", opponent_id="opp-A")
        self.receive(duel_id="B", status="in_progress", opponent_id="opp-B")

        self.receive(duel_id="A", status="ended", opponent_id="opp-A")

        states = self.service.active_match_notifications
        self.assertEqual(states["A"].status, MatchStatus.ENDED)
        self.assertEqual(states["B"].status, MatchStatus.IN_PROGRESS)
        self.assertIsNone(states["B"].end_time)
        self.assertEqual(self.service.queue.count(type=NotificationType.MATCH_ENDED, duel_id="B"), 0)
        self.assertEqual(self.service.queue.count(type=NotificationType.MATCH_STARTED, duel_id="B"), 1)


class TestChallengeFlow(EngineTestCase):

    def test_insert_without_status_is_a_challenge(self):
        queued = self.receive(kind="insert", duel_id="new-duel", status=None, challenger_id="other")

        self.assertEqual(types_of(queued), [NotificationType.DUEL_CHALLENGE])
        notification = queued[0]
        self.assertEqual(notification.body, "A player challenges you to Chess - Blitz")
        self.assertEqual(notification.data.challenger_id, "other")
        self.assertEqual(notification.priority, 1)

    def test_challenge_names_challenger_from_directory(self):
        directory = Mock(return_value="Alice")
        self.service = self.make_service(user_directory=directory)
        self.service.start()

        queued = self.receive(kind="insert", duel_id="d1", status="proposed", challenger_id="alice-id")

        directory.assert_called_once_with("alice-id")
        self.assertEqual(queued[0].body, "Alice challenges you to Chess - Blitz")

    def test_directory_failure_falls_back_to_generic_name(self):
        self.service = self.make_service(user_directory=Mock(side_effect=RuntimeError("down")))
        self.service.start()

        queued = self.receive(kind="insert", duel_id="d1", status="proposed")

        self.assertTrue(queued[0].body.startswith("A player"))

    def test_proposed_for_known_duel_is_silent(self):
        self.receive(duel_id="d1", status="accepted")

        self.assertEqual(self.receive(duel_id="d1", status="proposed"), [])

    def test_accepted_notifies_once(self):
        first = self.receive(duel_id="d1", status="accepted", challenger_id=USER_ID, opponent_id="bob")
        second = self.receive(duel_id="d1", status="accepted", challenger_id=USER_ID, opponent_id="bob")

        self.assertEqual(types_of(first), [NotificationType.DUEL_ACCEPTED])
        self.assertEqual(first[0].data.opponent_id, "bob")
        self.assertEqual(second, [])

    def test_declined_notifies_and_closes_running_match(self):
        self.receive(duel_id="d1", status="in_progress")

        queued = self.receive(duel_id="d1", status="declined")

        self.assertEqual(types_of(queued), [NotificationType.DUEL_DECLINED])
        self.assertEqual(self.service.active_match_notifications["d1"].status, MatchStatus.COMPLETED)

    def test_cancelled_closes_without_notification(self):
        self.receive(duel_id="d1", status="in_progress")

        self.assertEqual(self.receive(duel_id="d1", status="cancelled"), [])
        self.assertEqual(self.service.active_match_notifications["d1"].status, MatchStatus.COMPLETED)

    def test_expired_notifies_without_creating_state(self):
        queued = self.receive(duel_id="d1", status="expired")

        self.assertEqual(types_of(queued), [NotificationType.DUEL_EXPIRED])
        self.assertNotIn("d1", self.service.active_match_notifications)

    def test_disputed_goes_to_moderator_queue(self):
        queued = self.receive(duel_id="d1", status="disputed", reason="Scores disagree")

        self.assertEqual(types_of(queued), [NotificationType.DISPUTE])
        self.assertEqual(queued[0].user_id, MODERATOR_QUEUE)
        self.assertEqual(queued[0].data.reason, "Scores disagree")
        self.assertEqual(self.receive(duel_id="d1", status="disputed"), [])


class TestVerificationOutcomes(EngineTestCase):

    def test_verified_winner(self):
        self.receive(duel_id="d1", status="ended")

        queued = self.receive(duel_id="d1", status="completed", verification_status="verified", winner_id=USER_ID)

        self.assertEqual(types_of(queued), [NotificationType.VERIFICATION_SUCCESS])
        self.assertTrue(queued[0].data.is_winner)
        self.assertEqual(queued[0].title, "🏆 Victory!")

    def test_verified_loser_once(self):
        self.receive(duel_id="d1", status="ended")

        first = self.receive(duel_id="d1", status="completed", verification_status="verified", winner_id="opponent-1")
        second = self.receive(duel_id="d1", status="completed", verification_status="verified", winner_id="opponent-1")

        self.assertFalse(first[0].data.is_winner)
        self.assertEqual(second, [])

    def test_failed_carries_reason(self):
        queued = self.receive(duel_id="d1", status="ended", verification_status="failed", reason="Blurry screenshot")

        failed = [n for n in queued if n.type == NotificationType.VERIFICATION_FAILED]
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0].data.reason, "Blurry screenshot")
        self.assertIn("Blurry screenshot", failed[0].body)

    def test_forfeit_marks_running_match_forfeited(self):
        self.receive(duel_id="d1", status="in_progress")

        queued = self.receive(duel_id="d1", status="in_progress", verification_status="forfeited")

        self.assertEqual(types_of(queued), [NotificationType.DUEL_FORFEITED])
        self.assertEqual(self.service.active_match_notifications["d1"].status, MatchStatus.FORFEITED)


class TestGatingAndMalformedInput(EngineTestCase):

    def test_events_dropped_while_disconnected(self):
        self.service.simulate_connection_loss()

        self.assertFalse(self.service.is_connected)
        self.assertEqual(self.receive(duel_id="d1", status="in_progress"), [])
        self.assertEqual(self.service.active_match_notifications, {})
        self.assertEqual(self.service.pending_notifications, [])

    def test_reconnect_resumes_delivery(self):
        self.service.simulate_connection_loss()
        self.assertTrue(self.service.reconnect())

        self.assertTrue(self.service.is_connected)
        self.assertEqual(len(self.receive(duel_id="d1", status="in_progress")), 1)

    def test_not_started_service_drops_events(self):
        service = self.make_service()

        self.assertEqual(service.receive_duel_payload({'new': make_duel_record()}), [])

    def test_malformed_payloads_are_dropped(self):
        payloads = [
            {},
            {'new': None},
            {'new': "not-a-record"},
            {'new': {'status': 'in_progress'}},
            {'new': {'id': '', 'status': 'in_progress'}},
            {'new': {'id': 'd1', 'status': 'exploded'}},
            "garbage",
        ]
        for payload in payloads:
            with self.subTest(payload=payload):
                self.assertEqual(self.service.receive_duel_payload(payload), [])

        self.assertEqual(self.service.active_match_notifications, {})
        self.assertEqual(self.service.pending_notifications, [])

    def test_update_without_status_is_dropped(self):
        self.assertEqual(self.receive(kind="update", duel_id="d1", status=None), [])
        self.assertEqual(self.service.pending_notifications, [])

    def test_unknown_event_kind_is_dropped(self):
        self.assertEqual(self.receive(kind="delete", duel_id="d1"), [])

    def test_malformed_old_record_is_ignored(self):
        queued = self.service.receive_duel_payload({
            'new': make_duel_record(duel_id="d1", status="in_progress"),
            'old': {'status': 'bogus'},
        })

        self.assertEqual(types_of(queued), [NotificationType.MATCH_STARTED])

    def test_internal_failure_does_not_raise(self):
        self.service.tracker.should_send_notification = Mock(side_effect=RuntimeError("boom"))

        self.assertEqual(self.receive(duel_id="d1", status="in_progress"), [])

    def test_user_id_required(self):
        with self.assertRaises(ValueError):
            NotificationService(transport=self.transport, user_id="")


class TestPreferencesAndRateLimiting(EngineTestCase):

    def test_preferences_suppress_but_keep_state(self):
        self.service = self.make_service(preferences=NotificationPreferences(match_updates=False))
        self.service.start()

        queued = self.receive(duel_id="d1", status="in_progress")

        self.assertEqual(queued, [])
        self.assertEqual(self.service.active_match_notifications["d1"].status, MatchStatus.IN_PROGRESS)

        ended = self.receive(duel_id="d1", status="ended")
        # match_ended is a match update; the reminder is governed separately
        self.assertEqual(types_of(ended), [NotificationType.VERIFICATION_REMINDER])
        self.assertEqual(self.service.active_match_notifications["d1"].status, MatchStatus.ENDED)

    def test_disputes_ignore_preferences(self):
        prefs = NotificationPreferences(
            duel_challenges=False, match_updates=False, verification_reminders=False,
            achievements=False, level_ups=False,
        )
        self.service = self.make_service(preferences=prefs)
        self.service.start()

        self.assertIsNotNone(self.service.send_dispute_notification("d1", "cheating"))

    def test_progress_pings_rate_limited(self):
        self.service = self.make_service(progress_ping_min_interval_seconds=30)
        self.service.start()
        self.receive(duel_id="d1", status="in_progress")

        first = self.receive(duel_id="d1", status="in_progress", action="ping")
        too_soon = self.receive(duel_id="d1", status="in_progress", action="ping")
        self.clock.advance(30)
        later = self.receive(duel_id="d1", status="in_progress", action="ping")

        self.assertEqual(len(first), 1)
        self.assertEqual(too_soon, [])
        self.assertEqual(types_of(later), [NotificationType.MATCH_PROGRESS])
        self.assertEqual(later[0].data.ping_number, 3)
        self.assertEqual(self.service.active_match_notifications["d1"].ping_count, 3)


class TestDirectSendersAndDebugSurface(EngineTestCase):

    def test_level_up_deduplicated_per_level(self):
        first = self.service.send_level_up_notification(5)
        again = self.service.send_level_up_notification(5)
        next_level = self.service.send_level_up_notification(6)

        self.assertEqual(first.type, NotificationType.LEVEL_UP)
        self.assertEqual(first.data.new_level, 5)
        self.assertIsNone(again)
        self.assertIsNotNone(next_level)

    def test_achievement_notification(self):
        notification = self.service.send_achievement_notification("First Win", "You won your first duel")

        self.assertEqual(notification.type, NotificationType.ACHIEVEMENT)
        self.assertEqual(notification.title, "First Win")
        self.assertEqual(notification.user_id, USER_ID)

    def test_schedule_test_notification_is_delayed(self):
        notification = self.service.schedule_test_notification(seconds=5)

        self.assertEqual(notification.scheduled_for, self.clock.now + timedelta(seconds=5))
        self.assertEqual(notification.data.action, "test")
        self.assertFalse(notification.is_due(self.clock.now))
        self.assertTrue(notification.is_due(self.clock.now + timedelta(seconds=5)))

    def test_schedule_test_notification_not_deduplicated(self):
        self.service.schedule_test_notification()
        self.service.schedule_test_notification()

        self.assertEqual(self.service.queue.count(type=NotificationType.ACHIEVEMENT), 2)

    def test_emit_remote_duel_helpers(self):
        inserted = self.service.emit_remote_duel_insert(make_duel_record(duel_id="d1", status=None))
        updated = self.service.emit_remote_duel_update(make_duel_record(duel_id="d2", status="in_progress"))

        self.assertEqual(types_of(inserted), [NotificationType.DUEL_CHALLENGE])
        self.assertEqual(types_of(updated), [NotificationType.MATCH_STARTED])

    def test_transport_events_reach_engine(self):
        self.transport.emit_duel_update(make_duel_record(duel_id="d1", status="in_progress"))

        self.assertEqual(self.service.active_match_notifications["d1"].status, MatchStatus.IN_PROGRESS)

    def test_cross_device_event_loops_back(self):
        record = self.service.emit_cross_device_event()

        state = self.service.active_match_notifications[record['id']]
        self.assertEqual(state.status, MatchStatus.IN_PROGRESS)
        self.assertEqual(state.game_type, "CrossDevice")

    def test_reset_clears_everything(self):
        self.receive(duel_id="d1", status="in_progress")

        self.service.reset()

        self.assertEqual(self.service.active_match_notifications, {})
        self.assertEqual(self.service.pending_notifications, [])
        self.assertEqual(len(self.receive(duel_id="d1", status="in_progress")), 1)

    def test_stop_unsubscribes(self):
        self.service.stop()

        self.assertFalse(self.service.is_connected)
        self.assertEqual(self.transport.subscription_count, 0)


class TestConcurrentDelivery(EngineTestCase):
    """Events arriving on several transport threads at once."""

    THREADS = 16

    def run_threads(self, targets):
        barrier = threading.Barrier(len(targets))
        errors = []

        def run(target):
            try:
                barrier.wait()
                target()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(target,)) for target in targets]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        self.assertEqual(errors, [])

    def test_same_duel_from_many_threads_starts_once(self):
        targets = [lambda: self.receive(duel_id="d1", status="in_progress")] * self.THREADS

        self.run_threads(targets)

        self.assertEqual(self.service.queue.count(type=NotificationType.MATCH_STARTED, duel_id="d1"), 1)
        self.assertEqual(len(self.service.store), 1)

    def test_two_duels_advance_independently(self):
        def advance(duel_id):
            self.receive(duel_id=duel_id, status="in_progress")
            self.receive(duel_id=duel_id, status="ended")

        targets = [lambda: advance("A"), lambda: advance("B")] * (self.THREADS // 2)

        self.run_threads(targets)

        states = self.service.active_match_notifications
        self.assertEqual(set(states), {"A", "B"})
        for duel_id in ("A", "B"):
            self.assertEqual(states[duel_id].status, MatchStatus.ENDED)
            for notification_type in (
                NotificationType.MATCH_STARTED,
                NotificationType.MATCH_ENDED,
                NotificationType.VERIFICATION_REMINDER,
            ):
                self.assertEqual(self.service.queue.count(type=notification_type, duel_id=duel_id), 1)
        self.assertEqual(len(self.service.queue), 6)


if __name__ == '__main__':
    unittest.main()
