#!/usr/bin/env python3
"""
Tests for logging setup, sensitive data filtering and the security audit logger.
"""

import os
import sys
import time
import shutil
import logging
import tempfile
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from extattr_sync.logging_setup import (
    LoggingManager,
    SecurityAuditLogger,
    SensitiveDataFilter
)


def scrub(message):
    record = logging.LogRecord('test', logging.INFO, __file__, 1, message, None, None)
    SensitiveDataFilter().filter(record)
    return record.msg


class TestSensitiveDataFilter(unittest.TestCase):
    """Test the sensitive data filtering patterns."""

    def test_filter_patterns(self):
        test_cases = [
            ('password=secret123', 'password=****'),
            ('token=abc123def456', 'token=****'),
            ('client_secret=s3cr3t&scope=x', 'client_secret=****&scope=x'),
            ('{"bind_password": "topsecret"}', '{"bind_password": "****"}'),
            ('{"client_secret": "abc"}', '{"client_secret": "****"}'),
            ('{"expires_in": 3599, "access_token": "eyJ0eXAi"}', '{"expires_in": 3599, "access_token": "****"}'),
            ('Authorization: Bearer abc123token', 'Authorization: Bearer ****'),
            ('Normal message without secrets', 'Normal message without secrets'),
        ]
        for message, expected in test_cases:
            self.assertEqual(scrub(message), expected, message)

    def test_attribute_values_are_kept(self):
        message = "Set extensionAttribute3='Finance' on device 'WKS01'"
        self.assertEqual(scrub(message), message)

    def test_filter_always_passes_record(self):
        record = logging.LogRecord('test', logging.INFO, __file__, 1, 'password=x', None, None)
        self.assertTrue(SensitiveDataFilter().filter(record))


class TestLoggingManager(unittest.TestCase):
    """Test file logging setup and retention."""

    def setUp(self):
        self.log_dir = tempfile.mkdtemp(prefix='extattr_sync_test_logs_')
        self.root_handlers = list(logging.getLogger().handlers)
        self.root_level = logging.getLogger().level
        self.manager = LoggingManager()

    def tearDown(self):
        self.manager.reset()
        root = logging.getLogger()
        root.handlers[:] = self.root_handlers
        root.setLevel(self.root_level)
        shutil.rmtree(self.log_dir, ignore_errors=True)

    def read_log(self, name):
        with open(os.path.join(self.log_dir, name), encoding='utf-8') as f:
            return f.read()

    def test_run_log_is_scrubbed(self):
        self.manager.setup_logging({'level': 'DEBUG', 'log_dir': self.log_dir, 'console_output': False})

        logging.getLogger('extattr_sync.test').info('bind_password=hunter2')

        content = self.read_log('extattr-sync.log')
        self.assertIn('bind_password=****', content)
        self.assertNotIn('hunter2', content)

    def test_audit_records_go_to_audit_log(self):
        self.manager.setup_logging({'log_dir': self.log_dir, 'console_output': False,
                                    'audit_log_file': 'writes.log'})

        SecurityAuditLogger().log_attribute_write('graph', 'dev-1', "extensionAttribute3='Finance'", True)
        logging.getLogger('extattr_sync.test').info('not an audit record')

        audit = self.read_log('writes.log')
        self.assertIn('Attribute write SUCCESS: graph target=dev-1', audit)
        self.assertNotIn('not an audit record', audit)

    def test_setup_runs_once_until_reset(self):
        self.manager.setup_logging({'log_dir': self.log_dir, 'console_output': False})
        handlers = list(logging.getLogger().handlers)

        self.manager.setup_logging({'log_dir': self.log_dir, 'console_output': True})
        self.assertEqual(logging.getLogger().handlers, handlers)

        self.manager.reset()
        self.assertEqual(logging.getLogger().handlers, [])
        self.manager.setup_logging({'log_dir': self.log_dir, 'console_output': True})
        self.assertEqual(len(logging.getLogger().handlers), 2)

    def test_plain_file_handler_without_rotation(self):
        self.manager.setup_logging({'log_dir': self.log_dir, 'console_output': False, 'rotation': 'none'})

        self.assertIs(type(logging.getLogger().handlers[0]), logging.FileHandler)

    def test_old_rotated_logs_are_removed(self):
        old_log = os.path.join(self.log_dir, 'extattr-sync.log.2020-01-01')
        new_log = os.path.join(self.log_dir, 'audit.log.2099-01-01')
        for path in (old_log, new_log):
            with open(path, 'w') as f:
                f.write('x')
        old_time = time.time() - 30 * 86400
        os.utime(old_log, (old_time, old_time))

        self.manager.log_dir = self.log_dir
        self.manager.retention_days = 7

        self.assertEqual(self.manager._cleanup_old_logs(), 1)
        self.assertFalse(os.path.exists(old_log))
        self.assertTrue(os.path.exists(new_log))


class TestSecurityAuditLogger(unittest.TestCase):

    def test_authentication_and_writes(self):
        audit = SecurityAuditLogger()
        with self.assertLogs('security', level='INFO') as logs:
            audit.log_authentication_attempt('graph', 'app-id', False)
            audit.log_attribute_write('ldap', 'CN=WKS01,DC=corp', "extensionAttribute3='Finance'", True)
            audit.log_security_event('Certificate verification disabled', 'ldaps://dc01')

        self.assertIn('Authentication FAILURE: graph principal=app-id', logs.output[0])
        self.assertIn("Attribute write SUCCESS: ldap target=CN=WKS01,DC=corp extensionAttribute3='Finance'",
                      logs.output[1])
        self.assertTrue(logs.output[2].startswith('WARNING:security:Security event'))


if __name__ == '__main__':
    unittest.main()
