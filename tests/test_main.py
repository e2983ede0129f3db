#!/usr/bin/env python3
"""
Unit tests for the command line parser and MembershipSyncApp.
"""

import io
import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import patch, Mock

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sso_membership.api.client import FetchError
from sso_membership.api.transport import RemoteError
from sso_membership.config import ConfigurationError
from sso_membership.main import (
    MembershipSyncApp, build_parser, main,
    EXIT_OK, EXIT_CONFIG_ERROR, EXIT_FETCH_ERROR, EXIT_UNEXPECTED
)
from sso_membership.models import Identity

GROUP_ID = '3f2b8c1e-9a4d-4e6f-8b7a-1c2d3e4f5a6b'

ALICE = Identity('u1', 'alice@example.com', 'alice@example.com', 'Alice', True)
ALICE_SSO = Identity('u2', 'alice@sso.example.com', 'alice@sso.example.com', 'Alice', True)
BOB = Identity('u3', 'bob@other.com', 'bob@other.com', 'Bob', False)


class TestParser(unittest.TestCase):
    """Test cases for argument parsing and validation."""

    def setUp(self):
        self.parser = build_parser()

    def _rejects(self, argv):
        with patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as cm:
                self.parser.parse_args(argv)
        self.assertEqual(cm.exception.code, 2)

    def test_sync_arguments(self):
        args = self.parser.parse_args(['--debug', 'sync', GROUP_ID, '--domain', 'example.com',
                                       '--sso-domain', 'sso.example.com', '--match-to-local-part'])

        self.assertEqual(args.command, 'sync')
        self.assertEqual(args.group_id, GROUP_ID)
        self.assertEqual(args.domain, 'example.com')
        self.assertEqual(args.sso_domain, 'sso.example.com')
        self.assertTrue(args.match_to_local_part)
        self.assertFalse(args.match_by_username)
        self.assertIsNone(args.csv_file)
        self.assertTrue(args.debug)

    def test_invalid_group_id(self):
        self._rejects(['sync', 'not-a-uuid', '--domain', 'example.com', '--sso-domain', 'sso.example.com'])

    def test_invalid_domain(self):
        self._rejects(['sync', GROUP_ID, '--domain', 'example', '--sso-domain', 'sso.example.com'])
        self._rejects(['get-users', GROUP_ID, '--domain', 'exa mple.com'])

    def test_sync_requires_both_domains(self):
        self._rejects(['sync', GROUP_ID, '--domain', 'example.com'])

    def test_invalid_email(self):
        self._rejects(['delete-users', GROUP_ID, '--email', 'alice'])

    def test_missing_csv_file(self):
        self._rejects(['get-users', GROUP_ID, '--csv-file', '/nonexistent/users.csv'])

    def test_selectors_are_exclusive(self):
        self._rejects(['get-users', GROUP_ID, '--domain', 'example.com', '--email', 'alice@example.com'])

    def test_command_required(self):
        self._rejects([])

    def test_delete_users_requires_selector(self):
        with patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as cm:
                main(['delete-users', GROUP_ID])
        self.assertEqual(cm.exception.code, 2)


@patch('sso_membership.main.MembershipClient')
@patch('sso_membership.main.SSOClient')
@patch('sso_membership.main.APITransport')
@patch('sso_membership.main.setup_logging')
@patch('sso_membership.main.load_config')
class TestRun(unittest.TestCase):
    """Test cases for MembershipSyncApp.run."""

    def setUp(self):
        self.parser = build_parser()
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _csv(self, content):
        path = os.path.join(self.temp_dir, 'users.csv')
        with open(path, 'w', encoding='utf-8') as f:
            f.write(content)
        return path

    def _sync_args(self, *extra):
        return self.parser.parse_args(['sync', GROUP_ID, '--domain', 'example.com',
                                       '--sso-domain', 'sso.example.com'] + list(extra))

    def test_configuration_error(self, mock_load, mock_logging, mock_transport, mock_sso, mock_members):
        mock_load.side_effect = ConfigurationError('api.token is required')

        code = MembershipSyncApp().run(self._sync_args())

        self.assertEqual(code, EXIT_CONFIG_ERROR)
        mock_transport.assert_not_called()

    @patch('sso_membership.main.MembershipReconciler')
    def test_sync(self, mock_reconciler, mock_load, mock_logging, mock_transport, mock_sso, mock_members):
        mock_load.return_value = {'logging': {}}

        code = MembershipSyncApp(config_path='config.yaml').run(self._sync_args())

        self.assertEqual(code, EXIT_OK)
        mock_load.assert_called_once_with('config.yaml')
        sso_client, membership_client, policy = mock_reconciler.call_args.args
        self.assertIs(sso_client, mock_sso.return_value)
        self.assertIs(membership_client, mock_members.return_value)
        self.assertEqual(policy.domain, 'example.com')
        self.assertEqual(policy.sso_domain, 'sso.example.com')
        mock_reconciler.return_value.reconcile.assert_called_once_with(GROUP_ID, None)
        mock_transport.return_value.close_connection.assert_called_once()

    @patch('sso_membership.main.MembershipReconciler')
    def test_sync_with_csv(self, mock_reconciler, mock_load, mock_logging, mock_transport, mock_sso,
                           mock_members):
        mock_load.return_value = {'logging': {}}
        mock_sso.return_value.fetch_identities.return_value = [BOB, ALICE_SSO, ALICE]
        args = self._sync_args('--csv-file', self._csv('alice@example.com\n'))

        code = MembershipSyncApp().run(args)

        self.assertEqual(code, EXIT_OK)
        mock_reconciler.return_value.reconcile.assert_called_once_with(GROUP_ID, [ALICE, ALICE_SSO])

    @patch('sso_membership.main.MembershipReconciler')
    def test_sync_with_empty_csv(self, mock_reconciler, mock_load, mock_logging, mock_transport, mock_sso,
                                 mock_members):
        mock_load.return_value = {'logging': {}}
        args = self._sync_args('--csv-file', self._csv('\n'))

        self.assertEqual(MembershipSyncApp().run(args), EXIT_CONFIG_ERROR)
        mock_reconciler.assert_not_called()

    @patch('sso_membership.main.MembershipReconciler')
    def test_fetch_error(self, mock_reconciler, mock_load, mock_logging, mock_transport, mock_sso, mock_members):
        mock_load.return_value = {'logging': {}}
        mock_reconciler.return_value.reconcile.side_effect = FetchError('Unable to get SSO connection')

        self.assertEqual(MembershipSyncApp().run(self._sync_args()), EXIT_FETCH_ERROR)
        mock_transport.return_value.close_connection.assert_called_once()

    @patch('sso_membership.main.MembershipReconciler')
    def test_unexpected_error(self, mock_reconciler, mock_load, mock_logging, mock_transport, mock_sso,
                              mock_members):
        mock_load.return_value = {'logging': {}}
        mock_reconciler.return_value.reconcile.side_effect = RuntimeError('boom')

        with self.assertLogs('sso_membership.main', level='ERROR'):
            code = MembershipSyncApp().run(self._sync_args())

        self.assertEqual(code, EXIT_UNEXPECTED)

    def test_get_users(self, mock_load, mock_logging, mock_transport, mock_sso, mock_members):
        mock_load.return_value = {'logging': {}}
        mock_sso.return_value.fetch_identities.return_value = [ALICE, ALICE_SSO, BOB]
        stdout = io.StringIO()

        code = MembershipSyncApp().run(self.parser.parse_args(['get-users', GROUP_ID]), stdout=stdout)

        self.assertEqual(code, EXIT_OK)
        lines = stdout.getvalue().splitlines()
        self.assertEqual(lines[0], '"username","email","name","active"')
        self.assertEqual(len(lines), 4)
        self.assertEqual(lines[3], '"bob@other.com","bob@other.com","Bob","false"')

    def test_get_users_by_domain(self, mock_load, mock_logging, mock_transport, mock_sso, mock_members):
        mock_load.return_value = {'logging': {}}
        mock_sso.return_value.fetch_identities.return_value = [ALICE, ALICE_SSO, BOB]
        stdout = io.StringIO()
        args = self.parser.parse_args(['get-users', GROUP_ID, '--domain', 'sso.example.com'])

        MembershipSyncApp().run(args, stdout=stdout)

        lines = stdout.getvalue().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertIn('alice@sso.example.com', lines[1])

    def test_get_users_without_match(self, mock_load, mock_logging, mock_transport, mock_sso, mock_members):
        mock_load.return_value = {'logging': {}}
        mock_sso.return_value.fetch_identities.return_value = [ALICE]
        stdout = io.StringIO()
        args = self.parser.parse_args(['get-users', GROUP_ID, '--email', 'nobody@example.com'])

        self.assertEqual(MembershipSyncApp().run(args, stdout=stdout), EXIT_OK)
        self.assertEqual(stdout.getvalue(), '')

    def test_delete_users(self, mock_load, mock_logging, mock_transport, mock_sso, mock_members):
        mock_load.return_value = {'logging': {}}
        sso_client = mock_sso.return_value
        sso_client.fetch_identities.return_value = [ALICE, ALICE_SSO, BOB]
        sso_client.delete_identities.return_value = (1, 0)
        args = self.parser.parse_args(['delete-users', GROUP_ID, '--email', 'bob@other.com'])

        code = MembershipSyncApp().run(args)

        self.assertEqual(code, EXIT_OK)
        sso_client.delete_identities.assert_called_once_with(GROUP_ID, [BOB])

    def test_delete_users_nothing_selected(self, mock_load, mock_logging, mock_transport, mock_sso,
                                           mock_members):
        mock_load.return_value = {'logging': {}}
        sso_client = mock_sso.return_value
        sso_client.fetch_identities.return_value = [ALICE]
        args = self.parser.parse_args(['delete-users', GROUP_ID, '--domain', 'other.com'])

        self.assertEqual(MembershipSyncApp().run(args), EXIT_OK)
        sso_client.delete_identities.assert_not_called()


@patch('sso_membership.main.DirectoryClient')
@patch('sso_membership.main.APITransport')
@patch('sso_membership.main.load_config')
class TestHealthCheck(unittest.TestCase):
    """Test cases for the health check."""

    def test_healthy(self, mock_load, mock_transport, mock_directory):
        mock_load.return_value = {}
        mock_directory.return_value.get_json.return_value = {
            'data': {'id': 'me', 'attributes': {'username': 'svc-sync'}}
        }

        health = MembershipSyncApp().health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['api']['message'], 'Authenticated as svc-sync')
        mock_directory.return_value.get_json.assert_called_with('/rest/self')
        mock_transport.return_value.close_connection.assert_called_once()

    def test_api_failure(self, mock_load, mock_transport, mock_directory):
        mock_load.return_value = {}
        mock_directory.return_value.get_json.side_effect = RemoteError(401, 'GET', '/rest/self')

        health = MembershipSyncApp().health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['api']['status'], 'fail')

    def test_configuration_failure(self, mock_load, mock_transport, mock_directory):
        mock_load.side_effect = ConfigurationError('api.token is required')

        health = MembershipSyncApp().health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['configuration']['status'], 'fail')
        self.assertNotIn('api', health['checks'])
        mock_transport.assert_not_called()

    def test_main_exit_code(self, mock_load, mock_transport, mock_directory):
        mock_load.side_effect = ConfigurationError('api.token is required')

        with patch('sys.stdout', new_callable=io.StringIO) as stdout:
            with self.assertRaises(SystemExit) as cm:
                main(['health-check'])

        self.assertEqual(cm.exception.code, 1)
        self.assertIn('"unhealthy"', stdout.getvalue())


if __name__ == '__main__':
    unittest.main()
