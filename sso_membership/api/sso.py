"""
SSO connection users of a group.
"""

import logging
from typing import Dict, Any, List, Tuple

from sso_membership.api.client import DirectoryClient, FetchError
from sso_membership.api.transport import TransportError, RemoteError
from sso_membership.models import Identity

logger = logging.getLogger(__name__)


class SSOClient:
    """Lists and deletes the users of a group's SSO connection."""

    def __init__(self, client: DirectoryClient):
        self.client = client

    def get_connection(self, group_id: str) -> Dict[str, Any]:
        """
        Get the SSO connection of a group.

        A group has at most one self-service SSO connection, so the first
        one returned is used.

        Returns:
            Raw connection resource

        Raises:
            FetchError: If the group has no readable SSO connection
        """
        try:
            document = self.client.get_json(f"/rest/groups/{group_id}/sso_connections")
        except (TransportError, RemoteError) as e:
            raise FetchError(f"Unable to get SSO connection on group: {group_id}: {e}")

        connections = document.get('data') or []
        if not connections or not connections[0].get('id'):
            raise FetchError(f"Unable to get SSO connection on group: {group_id}")

        connection = connections[0]
        name = (connection.get('attributes') or {}).get('name') or connection['id']
        logger.info(f"SSO Connection Name: {name}")
        return connection

    def fetch_identities(self, group_id: str) -> List[Identity]:
        """
        Retrieve every user of the group's SSO connection.

        Raises:
            FetchError: If the connection or any page of users cannot be read
        """
        connection = self.get_connection(group_id)
        path = f"/rest/groups/{group_id}/sso_connections/{connection['id']}/users"

        try:
            resources = self.client.fetch_all(path)
        except (TransportError, RemoteError) as e:
            raise FetchError(f"Unable to get SSO users on connection {connection['id']}: {e}")

        identities = [Identity.from_api(resource) for resource in resources]
        logger.info(f"SSO Connection Users: {len(identities)}")
        return identities

    def delete_identity(self, group_id: str, connection_id: str, user_id: str):
        """
        Delete one SSO user.

        The directory notifies the deleted user by email.
        """
        self.client.delete(f"/rest/groups/{group_id}/sso_connections/{connection_id}/users/{user_id}")

    def delete_identities(self, group_id: str, identities: List[Identity]) -> Tuple[int, int]:
        """
        Delete SSO users one by one, logging and skipping failures.

        Returns:
            Tuple of (deleted count, failed count)

        Raises:
            FetchError: If the SSO connection cannot be read
        """
        connection_id = self.get_connection(group_id)['id']
        deleted = 0
        failed = 0

        for identity in identities:
            try:
                self.delete_identity(group_id, connection_id, identity.id)
                deleted += 1
                logger.info(f"Deleted User: {identity.describe()}")
            except (TransportError, RemoteError) as e:
                failed += 1
                logger.error(f"Failed to delete User: {identity.describe()}: {e}")

        return deleted, failed
