#!/usr/bin/env python3
"""
Unit tests for retry utilities.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sso_membership.retry import (
    retry_call, is_retryable_error, is_idempotent, create_retry_callback,
    RetryableError, MaxRetriesExceeded
)


class StatusError(Exception):
    def __init__(self, status):
        self.status = status
        super().__init__(f"status {status}")


class TestRetryCall(unittest.TestCase):
    """Test cases for retry_call."""

    def setUp(self):
        self.sleep = Mock()

    def test_success_first_attempt(self):
        func = Mock(return_value='ok')

        result = retry_call(func, args=(1,), kwargs={'a': 2}, sleep=self.sleep)

        self.assertEqual(result, 'ok')
        func.assert_called_once_with(1, a=2)
        self.sleep.assert_not_called()

    def test_success_after_failures(self):
        func = Mock(side_effect=[ConnectionError('reset'), ConnectionError('reset'), 'ok'])

        result = retry_call(func, max_attempts=3, delay=1.0, backoff=2.0,
                            exceptions=(ConnectionError,), sleep=self.sleep)

        self.assertEqual(result, 'ok')
        self.assertEqual(func.call_count, 3)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [1.0, 2.0])

    def test_max_retries_exceeded(self):
        error = ConnectionError('down')
        func = Mock(side_effect=error)

        with self.assertRaises(MaxRetriesExceeded) as ctx:
            retry_call(func, max_attempts=4, delay=0, exceptions=(ConnectionError,), sleep=self.sleep)

        self.assertEqual(ctx.exception.attempts, 4)
        self.assertIs(ctx.exception.last_exception, error)
        self.assertEqual(func.call_count, 4)

    def test_unlisted_exception_is_not_retried(self):
        func = Mock(side_effect=KeyError('x'))

        with self.assertRaises(KeyError):
            retry_call(func, max_attempts=3, exceptions=(ConnectionError,), sleep=self.sleep)

        func.assert_called_once()

    def test_single_attempt(self):
        func = Mock(side_effect=ConnectionError('down'))

        with self.assertRaises(MaxRetriesExceeded):
            retry_call(func, max_attempts=1, exceptions=(ConnectionError,), sleep=self.sleep)

        func.assert_called_once()
        self.sleep.assert_not_called()

    def test_callback_invoked_and_failures_ignored(self):
        callback = Mock(side_effect=RuntimeError('broken callback'))
        func = Mock(side_effect=[TimeoutError('slow'), 'ok'])

        result = retry_call(func, max_attempts=2, delay=0, exceptions=(TimeoutError,),
                            on_retry=callback, sleep=self.sleep)

        self.assertEqual(result, 'ok')
        callback.assert_called_once()
        self.assertEqual(callback.call_args.args[0], 1)

    def test_invalid_attempts(self):
        with self.assertRaises(ValueError):
            retry_call(Mock(), max_attempts=0)


class TestRetryHelpers(unittest.TestCase):
    """Test cases for retry classification helpers."""

    def test_network_errors_are_retryable(self):
        self.assertTrue(is_retryable_error(ConnectionResetError()))
        self.assertTrue(is_retryable_error(TimeoutError()))
        self.assertTrue(is_retryable_error(RetryableError()))

    def test_status_classification(self):
        self.assertTrue(is_retryable_error(StatusError(429)))
        self.assertTrue(is_retryable_error(StatusError(500)))
        self.assertTrue(is_retryable_error(StatusError(503)))
        self.assertFalse(is_retryable_error(StatusError(404)))
        self.assertFalse(is_retryable_error(StatusError(409)))

    def test_other_errors_are_not_retryable(self):
        self.assertFalse(is_retryable_error(ValueError('bad')))

    def test_idempotent_methods(self):
        for method in ('GET', 'get', 'DELETE', 'PUT', 'HEAD', 'OPTIONS'):
            self.assertTrue(is_idempotent(method), method)
        for method in ('POST', 'PATCH', 'post'):
            self.assertFalse(is_idempotent(method), method)

    def test_retry_callback_logs_warning(self):
        callback = create_retry_callback('GET /rest/self')
        with self.assertLogs('sso_membership.retry', level='WARNING') as cm:
            callback(2, ConnectionError('reset'))
        self.assertIn('GET /rest/self failed on attempt 2', cm.output[0])


if __name__ == '__main__':
    unittest.main()
