"""
Group and organization memberships of a user.

Mutations use JSON:API relationship documents::

    {"data": {"type": "org_membership",
              "relationships": {"org": {"data": {"id": ..., "type": "org"}},
                                "role": {"data": {...}},
                                "user": {"data": {"id": ..., "type": "user"}}}}}
"""

import logging
from typing import Dict, Any, List
from urllib.parse import urlencode

from sso_membership.api.client import DirectoryClient
from sso_membership.models import (
    Ref, GroupMembership, OrgMembership,
    TYPE_USER, TYPE_GROUP_MEMBERSHIP, TYPE_ORG_MEMBERSHIP
)

logger = logging.getLogger(__name__)

PAGE_LIMIT = 100


def _relationship(ref: Ref) -> Dict[str, Any]:
    return {'data': ref.to_data()}


def membership_create_body(membership_type: str, container_key: str, container: Ref,
                           role: Ref, user_id: str) -> Dict[str, Any]:
    """
    Build the body creating a membership of a user.

    Args:
        membership_type: ``group_membership`` or ``org_membership``
        container_key: ``group`` or ``org``
        container: Group or org the membership belongs to
        role: Role to grant
        user_id: Member user id
    """
    return {
        'data': {
            'type': membership_type,
            'relationships': {
                container_key: _relationship(container),
                'role': _relationship(role),
                'user': _relationship(Ref(user_id, TYPE_USER)),
            }
        }
    }


def role_update_body(membership_id: str, role: Ref) -> Dict[str, Any]:
    """Build the body changing the role of an existing group membership."""
    return {
        'data': {
            'id': membership_id,
            'type': TYPE_GROUP_MEMBERSHIP,
            'relationships': {
                'role': _relationship(role),
            }
        }
    }


class MembershipClient:
    """Reads and changes memberships through the directory API."""

    def __init__(self, client: DirectoryClient):
        self.client = client

    def _query(self, user_id: str) -> str:
        return urlencode({'limit': PAGE_LIMIT, 'user_id': user_id})

    def list_group_memberships(self, group_id: str, user_id: str) -> List[GroupMembership]:
        resources = self.client.fetch_all(f"/rest/groups/{group_id}/memberships?{self._query(user_id)}")
        return [GroupMembership.from_api(resource) for resource in resources]

    def list_org_memberships(self, group_id: str, user_id: str) -> List[OrgMembership]:
        """All org memberships of a user across the orgs of the group."""
        resources = self.client.fetch_all(f"/rest/groups/{group_id}/org_memberships?{self._query(user_id)}")
        return [OrgMembership.from_api(resource) for resource in resources]

    def update_group_membership_role(self, group_id: str, membership_id: str, role: Ref) -> Dict[str, Any]:
        return self.client.patch_json(
            f"/rest/groups/{group_id}/memberships/{membership_id}",
            role_update_body(membership_id, role)
        )

    def create_group_membership(self, group: Ref, role: Ref, user_id: str) -> Dict[str, Any]:
        return self.client.post_json(
            f"/rest/groups/{group.id}/memberships",
            membership_create_body(TYPE_GROUP_MEMBERSHIP, 'group', group, role, user_id)
        )

    def create_org_membership(self, org: Ref, role: Ref, user_id: str) -> Dict[str, Any]:
        return self.client.post_json(
            f"/rest/orgs/{org.id}/memberships",
            membership_create_body(TYPE_ORG_MEMBERSHIP, 'org', org, role, user_id)
        )

    def delete_org_membership(self, org_id: str, membership_id: str) -> Dict[str, Any]:
        return self.client.delete(f"/rest/orgs/{org_id}/memberships/{membership_id}")
