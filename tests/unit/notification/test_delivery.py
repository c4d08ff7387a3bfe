#!/usr/bin/env python3
"""
Tests for the notification dispatcher and the delivery task.

Usage:
    python -m pytest tests/unit/notification/test_delivery.py -v
"""

import unittest
from datetime import timedelta
from unittest.mock import MagicMock, Mock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from notification.delivery import (
    DeliveryError,
    NotificationDispatcher,
    build_delivery_data,
    deliver_notification_task,
)
from notification.message_builder import NotificationMessageBuilder
from notification.pending import PendingNotificationQueue
from tests.mocks.duel_mocks import BASE_TIME, FakeClock

NOW = BASE_TIME


class TestDeliverNotificationTask(unittest.TestCase):

    def setUp(self):
        self.notification = NotificationMessageBuilder.match_ended("user-1", "d1", now=NOW)

    @patch('notification.delivery.NotificationChannelFactory.get_channel')
    def test_sends_title_and_body(self, mock_get_channel):
        channel = Mock()
        channel.send.return_value = True
        mock_get_channel.return_value = channel

        data = build_delivery_data(self.notification, 'webhook', 'https://hooks.example.com')
        self.assertTrue(deliver_notification_task(data))

        mock_get_channel.assert_called_once_with('webhook')
        recipient, subject, body, metadata = channel.send.call_args[0]
        self.assertEqual(recipient, 'https://hooks.example.com')
        self.assertEqual(subject, self.notification.title)
        self.assertEqual(body, self.notification.body)
        self.assertEqual(metadata['notification']['id'], self.notification.id)

    @patch('notification.delivery.NotificationChannelFactory.get_channel')
    def test_failure_returns_false_or_raises(self, mock_get_channel):
        mock_get_channel.return_value = Mock(send=Mock(return_value=False))
        data = build_delivery_data(self.notification, 'in_app', 'user-1')

        self.assertFalse(deliver_notification_task(data))
        with self.assertRaises(DeliveryError):
            deliver_notification_task(data, raise_on_failure=True)


class TestNotificationDispatcher(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.queue = PendingNotificationQueue()

    def test_sync_mode_marks_delivered(self):
        started = self.queue.append(NotificationMessageBuilder.match_started("user-1", "d1", "Chess", now=NOW))
        dispatcher = NotificationDispatcher(self.queue, clock=self.clock)

        with patch('notification.delivery.deliver_notification_task', return_value=True) as mock_task:
            delivered = dispatcher.dispatch_due()

        self.assertEqual(delivered, [started.id])
        self.assertEqual(mock_task.call_args[0][0]['recipient'], 'user-1')
        self.assertEqual(self.queue.get(started.id).delivered_at, NOW)
        self.assertFalse(dispatcher.async_mode)

    def test_failures_stay_pending(self):
        notification = self.queue.append(NotificationMessageBuilder.level_up("user-1", 3, now=NOW))
        dispatcher = NotificationDispatcher(self.queue, clock=self.clock)

        with patch('notification.delivery.deliver_notification_task', return_value=False):
            self.assertEqual(dispatcher.dispatch_due(), [])

        self.assertIsNone(self.queue.get(notification.id).delivered_at)
        self.assertEqual(len(self.queue.due(NOW)), 1)

    def test_successful_channels_not_resent(self):
        notification = self.queue.append(NotificationMessageBuilder.level_up("user-1", 3, now=NOW))
        dispatcher = NotificationDispatcher(
            self.queue, channels={'in_app': None, 'webhook': 'https://hooks.example.com'}, clock=self.clock
        )

        outcomes = {'in_app': [True], 'webhook': [False, True]}
        sent = []

        def fake_task(data):
            sent.append(data['channel_type'])
            return outcomes[data['channel_type']].pop(0)

        with patch('notification.delivery.deliver_notification_task', side_effect=fake_task):
            self.assertEqual(dispatcher.dispatch_due(), [])
            self.assertEqual(dispatcher.dispatch_due(), [notification.id])

        self.assertEqual(sent, ['in_app', 'webhook', 'webhook'])

    def test_partial_sends_forgotten_after_expiry(self):
        progress = self.queue.append(NotificationMessageBuilder.match_progress("user-1", "d1", 1, now=NOW))
        dispatcher = NotificationDispatcher(
            self.queue, channels={'in_app': None, 'webhook': 'https://hooks.example.com'}, clock=self.clock
        )

        def fake_task(data):
            return data['channel_type'] == 'in_app'

        with patch('notification.delivery.deliver_notification_task', side_effect=fake_task):
            self.assertEqual(dispatcher.dispatch_due(), [])
            self.assertIn(progress.id, dispatcher._sent_channels)

            self.assertEqual(dispatcher.dispatch_due(NOW + timedelta(seconds=90)), [])

        self.assertEqual(dispatcher._sent_channels, {})
        self.assertIsNone(self.queue.get(progress.id).delivered_at)

    def test_scheduled_and_expired_entries(self):
        reminder = self.queue.append(NotificationMessageBuilder.verification_reminder("user-1", "d1", now=NOW))
        self.queue.append(NotificationMessageBuilder.match_progress("user-1", "d1", 1, now=NOW))
        dispatcher = NotificationDispatcher(self.queue, clock=self.clock)

        with patch('notification.delivery.deliver_notification_task', return_value=True) as mock_task:
            # Reminder not yet due; progress ping expires after 60s
            self.assertEqual(dispatcher.dispatch_due(NOW + timedelta(seconds=90)), [])
            self.assertEqual(dispatcher.dispatch_due(NOW + timedelta(seconds=120)), [reminder.id])

        self.assertEqual(mock_task.call_count, 1)

    def test_dispatch_in_priority_order(self):
        low = self.queue.append(NotificationMessageBuilder.level_up("user-1", 2, now=NOW))
        urgent = self.queue.append(NotificationMessageBuilder.match_ended("user-1", "d1", now=NOW))
        dispatcher = NotificationDispatcher(self.queue, clock=self.clock)

        with patch('notification.delivery.deliver_notification_task', return_value=True):
            self.assertEqual(dispatcher.dispatch_due(), [urgent.id, low.id])

    def test_async_mode_enqueues_with_retry(self):
        notification = self.queue.append(NotificationMessageBuilder.match_ended("user-1", "d1", now=NOW))
        rq_queue = MagicMock()
        rq_queue.enqueue.return_value = Mock(id="job-1")
        dispatcher = NotificationDispatcher(self.queue, rq_queue=rq_queue, clock=self.clock)

        self.assertEqual(dispatcher.dispatch_due(), [notification.id])

        args, kwargs = rq_queue.enqueue.call_args
        self.assertIs(args[0], deliver_notification_task)
        self.assertEqual(args[1]['notification']['id'], notification.id)
        self.assertTrue(kwargs['raise_on_failure'])
        self.assertEqual(kwargs['retry'].max, 3)

    def test_enqueue_failure_leaves_pending(self):
        notification = self.queue.append(NotificationMessageBuilder.match_ended("user-1", "d1", now=NOW))
        rq_queue = MagicMock()
        rq_queue.enqueue.side_effect = RedisConnectionError("down")
        dispatcher = NotificationDispatcher(self.queue, rq_queue=rq_queue, clock=self.clock)

        self.assertEqual(dispatcher.dispatch_due(), [])
        self.assertIsNone(self.queue.get(notification.id).delivered_at)

    @patch('notification.delivery.Queue')
    @patch('notification.delivery.Redis')
    def test_async_setup_uses_named_queue(self, mock_redis, mock_queue):
        dispatcher = NotificationDispatcher(self.queue, use_async_queue=True, redis_url='redis://r:6379/0')

        self.assertTrue(dispatcher.async_mode)
        mock_redis.from_url.assert_called_once_with('redis://r:6379/0')
        mock_queue.assert_called_once_with('duel-notifications', connection=mock_redis.from_url.return_value)

    @patch('notification.delivery.Redis')
    def test_redis_unavailable_falls_back_to_sync(self, mock_redis):
        mock_redis.from_url.return_value.ping.side_effect = RedisConnectionError("refused")

        dispatcher = NotificationDispatcher(self.queue, use_async_queue=True)

        self.assertFalse(dispatcher.async_mode)
        self.assertIsNone(dispatcher.rq_queue)


if __name__ == '__main__':
    unittest.main()
