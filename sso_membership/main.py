"""
Command line entry point for SSO Membership Sync.

Commands:
    sync            Carry group roles and org memberships over to SSO-provisioned users
    get-users       Print SSO users as CSV
    delete-users    Delete SSO users
    health-check    Check configuration and API connectivity
"""

import os
import re
import sys
import json
import uuid
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, List, Optional, TextIO

from sso_membership import __version__
from sso_membership.config import load_config, ConfigurationError
from sso_membership.logging_setup import setup_logging, shutdown_logging
from sso_membership.api.transport import APITransport, TransportError, RemoteError
from sso_membership.api.client import DirectoryClient, FetchError
from sso_membership.api.sso import SSOClient
from sso_membership.api.membership import MembershipClient
from sso_membership.matching import (
    MatchPolicy, is_valid_email, filter_by_domain, filter_by_identifiers,
    filter_with_counterparts
)
from sso_membership.csv_io import read_identifiers, write_identities
from sso_membership.reconcile import MembershipReconciler

logger = logging.getLogger(__name__)

DOMAIN_PATTERN = re.compile(r'^(?:[a-zA-Z0-9-]+\.)+[a-zA-Z]{2,}$')

EXIT_OK = 0
EXIT_UNHEALTHY = 1
EXIT_CONFIG_ERROR = 2
EXIT_FETCH_ERROR = 3
EXIT_UNEXPECTED = 4


# argparse type validators

def group_id_arg(value: str) -> str:
    try:
        uuid.UUID(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"groupID must be a valid UUID: {value}")
    return value


def domain_arg(value: str) -> str:
    if not DOMAIN_PATTERN.match(value):
        raise argparse.ArgumentTypeError(f"domain must be a valid domain name: {value}")
    return value


def email_arg(value: str) -> str:
    if not is_valid_email(value):
        raise argparse.ArgumentTypeError(f"email must be a valid email address: {value}")
    return value


def csv_file_arg(value: str) -> str:
    if not os.path.isfile(value):
        raise argparse.ArgumentTypeError(f"csvFile does not exist: {value}")
    return value


class MembershipSyncApp:
    """
    Runs one command against the directory API.

    Owns configuration, logging, and the API clients for the duration of the
    command, and maps failures to process exit codes.
    """

    def __init__(self, config_path: Optional[str] = None, debug: bool = False):
        """
        Initialize the application.

        Args:
            config_path: Path to configuration file
            debug: Enable debug logging
        """
        self.config_path = config_path
        self.debug = debug
        self.config = None
        self.transport = None
        self.sso_client = None
        self.membership_client = None

    def _load_configuration(self):
        self.config = load_config(self.config_path)

    def _setup_logging(self):
        log_file = setup_logging(self.config.get('logging', {}), debug=self.debug)
        if log_file:
            logger.info(f"Writing run log to {log_file}")

    def _build_clients(self):
        self.transport = APITransport(self.config)
        directory = DirectoryClient(self.transport)
        self.sso_client = SSOClient(directory)
        self.membership_client = MembershipClient(directory)

    def run(self, args: argparse.Namespace, stdout: Optional[TextIO] = None) -> int:
        """
        Run the selected command.

        Args:
            args: Parsed command line arguments
            stdout: Stream for command output, defaults to sys.stdout

        Returns:
            Exit code
        """
        try:
            self._load_configuration()
            self._setup_logging()
            self._build_clients()

            logger.info(f"SSO Membership Sync {__version__}: {args.command}")

            if args.command == 'sync':
                return self.sync(args)
            if args.command == 'get-users':
                return self.get_users(args, stdout or sys.stdout)
            if args.command == 'delete-users':
                return self.delete_users(args)
            raise ValueError(f"Unknown command: {args.command}")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except FetchError as e:
            logger.error(f"Failed to retrieve data from the API: {e}")
            return EXIT_FETCH_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _select_identities(self, args: argparse.Namespace, policy: MatchPolicy) -> List:
        """Fetch SSO users and narrow them down by --domain, --email or --csv-file."""
        identities = self.sso_client.fetch_identities(args.group_id)

        if args.domain:
            return filter_by_domain(identities, args.domain, policy.match_by_username)
        if args.email:
            return filter_by_identifiers([args.email], identities, policy.match_by_username)
        if args.csv_file:
            return filter_by_identifiers(self._read_csv(args.csv_file), identities, policy.match_by_username)
        return identities

    def _read_csv(self, csv_file: str) -> List[str]:
        try:
            identifiers = read_identifiers(csv_file)
        except OSError as e:
            raise ConfigurationError(f"Failed to read CSV file {csv_file}: {e}")
        if not identifiers:
            raise ConfigurationError(f"CSV file is empty: {csv_file}")
        return identifiers

    def sync(self, args: argparse.Namespace) -> int:
        """Reconcile memberships for the group."""
        policy = MatchPolicy(
            domain=args.domain,
            sso_domain=args.sso_domain,
            match_by_username=args.match_by_username,
            match_to_local_part=args.match_to_local_part
        )
        logger.debug(f"Match policy: {policy}")

        identities = None
        if args.csv_file:
            identifiers = self._read_csv(args.csv_file)
            identities = filter_with_counterparts(
                identifiers, self.sso_client.fetch_identities(args.group_id), policy
            )

        reconciler = MembershipReconciler(self.sso_client, self.membership_client, policy)
        reconciler.reconcile(args.group_id, identities)
        return EXIT_OK

    def get_users(self, args: argparse.Namespace, stdout: TextIO) -> int:
        """Write the selected SSO users as CSV."""
        policy = MatchPolicy(match_by_username=args.match_by_username)
        identities = self._select_identities(args, policy)

        if not identities:
            logger.error("No users found matching the specified criteria")
            return EXIT_OK

        count = write_identities(stdout, identities)
        logger.info(f"Wrote {count} users")
        return EXIT_OK

    def delete_users(self, args: argparse.Namespace) -> int:
        """Delete the selected SSO users."""
        policy = MatchPolicy(match_by_username=args.match_by_username)
        identities = self._select_identities(args, policy)

        if not identities:
            logger.info("No users found matching the specified criteria, no Users to delete")
            return EXIT_OK

        logger.info(f"Deleting {len(identities)} users")
        deleted, failed = self.sso_client.delete_identities(args.group_id, identities)
        logger.info(f"Deleted {deleted} users, {failed} failed")
        return EXIT_OK

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of configuration and API access.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._build_clients()
            user = DirectoryClient(self.transport).get_json('/rest/self')
            attributes = (user.get('data') or {}).get('attributes') or {}
            name = attributes.get('username') or attributes.get('name') or 'unknown'
            health_status['checks']['api'] = {
                'status': 'pass',
                'message': f"Authenticated as {name}"
            }
        except (TransportError, RemoteError) as e:
            health_status['checks']['api'] = {
                'status': 'fail',
                'message': f'API request failed: {e}'
            }
            health_status['status'] = 'unhealthy'
        finally:
            self._cleanup()

        return health_status

    def _cleanup(self):
        if self.transport:
            self.transport.close_connection()


def _add_selection_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('group_id', metavar='GROUP_ID', type=group_id_arg, help='Group ID (UUID)')
    selection = parser.add_mutually_exclusive_group()
    selection.add_argument('--domain', type=domain_arg, help='Select users of this email domain')
    selection.add_argument('--email', type=email_arg, help='Select the user with this email')
    selection.add_argument('--csv-file', type=csv_file_arg,
                           help='Select users listed in the first column of this CSV file')
    parser.add_argument('--match-by-username', action='store_true',
                        help='Match users by username instead of email')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='sso-membership',
        description='Modify SSO users membership at Group and Org'
    )
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    sync_parser = subparsers.add_parser(
        'sync', help='Synchronize memberships of SSO-provisioned users with their previous domain users'
    )
    sync_parser.add_argument('group_id', metavar='GROUP_ID', type=group_id_arg, help='Group ID (UUID)')
    sync_parser.add_argument('--domain', type=domain_arg, required=True,
                             help='Email domain of the existing users')
    sync_parser.add_argument('--sso-domain', type=domain_arg, required=True,
                             help='Email domain of the SSO-provisioned users')
    sync_parser.add_argument('--csv-file', type=csv_file_arg,
                             help='Only synchronize users listed in the first column of this CSV file')
    sync_parser.add_argument('--match-by-username', action='store_true',
                             help='Select existing users by username instead of email')
    sync_parser.add_argument('--match-to-local-part', action='store_true',
                             help='Find provisioned users by username equal to the local part of the existing user')

    get_parser = subparsers.add_parser('get-users', help='Print SSO users as CSV')
    _add_selection_arguments(get_parser)

    delete_parser = subparsers.add_parser('delete-users', help='Delete SSO users matching an email or domain')
    _add_selection_arguments(delete_parser)

    subparsers.add_parser('health-check', help='Check configuration and API access')

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'delete-users' and not (args.domain or args.email or args.csv_file):
        parser.error('delete-users requires one of --domain, --email or --csv-file')

    app = MembershipSyncApp(config_path=args.config, debug=args.debug)

    if args.command == 'health-check':
        health_status = app.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(EXIT_OK if health_status['status'] == 'healthy' else EXIT_UNHEALTHY)

    exit_code = app.run(args)
    shutdown_logging()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
