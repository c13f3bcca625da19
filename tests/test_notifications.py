#!/usr/bin/env python3
"""
Tests for email notifications.
"""

import os
import sys
import smtplib
import unittest
from unittest.mock import patch

# Add parent directory to path to import extattr_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from extattr_sync.models import SyncResult, SyncStatus
from extattr_sync.notifications import (
    MAX_LISTED_FAILURES,
    send_email,
    send_failure_notification,
    send_session_failure,
    send_sync_summary,
    send_test_notification
)


def error_result(name):
    return SyncResult(name, SyncStatus.ERROR, 'Update failed: HTTP 500', matched_remote_id='dev-1')


def success_result(name):
    return SyncResult(name, SyncStatus.SUCCESS, 'Set extensionAttribute3', matched_remote_id='dev-2')


class TestSendEmail(unittest.TestCase):
    """Test cases for SMTP delivery."""

    def setUp(self):
        self.config = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_server': 'smtp.corp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'alerts@corp.example.com',
            'smtp_password': 'smtppass',
            'email_from': 'alerts@corp.example.com',
            'email_to': ['admin@corp.example.com', 'ops@corp.example.com']
        }

    @patch('extattr_sync.notifications.smtplib.SMTP')
    def test_send_with_starttls_and_login(self, mock_smtp):
        self.assertTrue(send_email('Subject', 'Body', self.config))

        server = mock_smtp.return_value.__enter__.return_value
        mock_smtp.assert_called_once_with('smtp.corp.example.com', 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('alerts@corp.example.com', 'smtppass')
        sender, recipients, message = server.sendmail.call_args.args
        self.assertEqual(sender, 'alerts@corp.example.com')
        self.assertEqual(recipients, ['admin@corp.example.com', 'ops@corp.example.com'])
        self.assertIn('Subject: Subject', message)
        mock_smtp.return_value.__exit__.assert_called_once()

    @patch('extattr_sync.notifications.smtplib.SMTP_SSL')
    def test_implicit_tls_port(self, mock_smtp_ssl):
        self.config['smtp_port'] = 465
        self.config['email_to'] = 'admin@corp.example.com'

        self.assertTrue(send_email('Subject', 'Body', self.config))

        mock_smtp_ssl.assert_called_once_with('smtp.corp.example.com', 465)
        server = mock_smtp_ssl.return_value.__enter__.return_value
        server.starttls.assert_not_called()
        self.assertEqual(server.sendmail.call_args.args[1], ['admin@corp.example.com'])

    @patch('extattr_sync.notifications.smtplib.SMTP')
    def test_disabled_or_incomplete_config(self, mock_smtp):
        self.assertFalse(send_email('S', 'B', dict(self.config, enable_email=False)))
        self.assertFalse(send_email('S', 'B', dict(self.config, smtp_server=None)))
        self.assertFalse(send_email('S', 'B', dict(self.config, email_to=[])))
        mock_smtp.assert_not_called()

    @patch('extattr_sync.notifications.smtplib.SMTP')
    def test_smtp_failure_returns_false_and_closes(self, mock_smtp):
        mock_smtp.return_value.__exit__.return_value = False
        mock_smtp.return_value.__enter__.return_value.login.side_effect = (
            smtplib.SMTPAuthenticationError(535, b'bad credentials')
        )
        self.assertFalse(send_email('S', 'B', self.config))
        mock_smtp.return_value.__exit__.assert_called_once()
        mock_smtp.return_value.__enter__.return_value.sendmail.assert_not_called()

        mock_smtp.side_effect = ConnectionRefusedError('refused')
        self.assertFalse(send_email('S', 'B', self.config))


@patch('extattr_sync.notifications.send_email', return_value=True)
class TestNotificationMessages(unittest.TestCase):
    """Test cases for the message builders."""

    def setUp(self):
        self.config = {'enable_email': True, 'email_on_failure': True, 'email_on_success': False}

    def test_failure_notification(self, mock_send):
        self.assertTrue(send_failure_notification('Unexpected Error', 'boom', self.config, {'Exit Code': 4}))

        subject, body, config = mock_send.call_args.args
        self.assertEqual(subject, 'Extension Attribute Sync Alert: Unexpected Error')
        self.assertIn('Error Message: boom', body)
        self.assertIn('Exit Code: 4', body)

    def test_failure_notification_disabled(self, mock_send):
        self.config['email_on_failure'] = False
        self.assertFalse(send_failure_notification('X', 'boom', self.config))
        mock_send.assert_not_called()

    def test_session_failure(self, mock_send):
        send_session_failure('Microsoft Graph', 'AADSTS7000215', self.config, retry_count=0)

        subject, body, config = mock_send.call_args.args
        self.assertEqual(subject, 'Extension Attribute Sync Alert: Microsoft Graph Connection Failed')
        self.assertIn('Component: Microsoft Graph Connection', body)

    def test_summary_not_sent_for_clean_run(self, mock_send):
        results = [success_result('WKS01$')]
        self.assertFalse(send_sync_summary({'Success': 1, 'Total': 1}, results, 1.5, False, self.config))
        mock_send.assert_not_called()

    def test_summary_sent_on_success_when_enabled(self, mock_send):
        self.config['email_on_success'] = True

        send_sync_summary({'Success': 1, 'Total': 1}, [success_result('WKS01$')], 75.0, True, self.config)

        subject, body, config = mock_send.call_args.args
        self.assertEqual(subject, 'Extension Attribute Sync: Successful Completion (Preview)')
        self.assertIn('Runtime: 1m 15.0s', body)

    def test_summary_lists_limited_failures(self, mock_send):
        results = [error_result(f"WKS{i:02d}$") for i in range(MAX_LISTED_FAILURES + 3)]
        summary = {'Error': len(results), 'Total': len(results)}

        send_sync_summary(summary, results, 2.0, False, self.config)

        subject, body, config = mock_send.call_args.args
        self.assertEqual(subject, f"Extension Attribute Sync: {len(results)} errors (Apply)")
        self.assertIn('1. WKS00$: Update failed: HTTP 500', body)
        self.assertNotIn(f"WKS{MAX_LISTED_FAILURES:02d}$", body)
        self.assertIn('... and 3 more errors', body)

    def test_test_notification(self, mock_send):
        config = dict(self.config, smtp_server='smtp.corp.example.com', email_to='admin@corp.example.com')

        self.assertTrue(send_test_notification(config))

        subject, body, _ = mock_send.call_args.args
        self.assertEqual(subject, 'Extension Attribute Sync: Configuration Test')
        self.assertIn('Recipients: admin@corp.example.com', body)


if __name__ == '__main__':
    unittest.main()
