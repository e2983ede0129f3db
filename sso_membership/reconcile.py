"""
Membership reconciliation between source identities and their SSO-provisioned counterparts.

A run has three strictly sequential phases:

1. Scan: collect every source-domain identity with its group and org
   memberships. Any failure here is fatal.
2. Match: pair each source identity with the first provisioned identity
   matching the policy, and look up that identity's group membership.
3. Apply: for each matched pair, give the provisioned identity the source
   group role and replace its org memberships with the source ones.
   Failures only skip the affected step.
"""

import logging
from datetime import datetime
from typing import Dict, Any, List, Optional

from sso_membership.api.client import FetchError
from sso_membership.api.transport import TransportError, RemoteError
from sso_membership.matching import (
    MatchPolicy, is_source_identity, source_key, find_counterpart,
    local_part, provisioned_email
)
from sso_membership.models import Identity, GroupMembership, OrgMembership

logger = logging.getLogger(__name__)


class ReconcileError(Exception):
    """A single membership change failed; the run continues."""
    pass


class CorrespondenceRecord:
    """
    One source identity, its membership snapshot, and its provisioned counterpart once found.

    Records live for a single run only.
    """

    def __init__(self, key: str, source: Identity, group_memberships: List[GroupMembership],
                 org_memberships: List[OrgMembership]):
        self.key = key
        self.source = source
        self.group_memberships = group_memberships
        self.org_memberships = org_memberships
        self.clear_match()

    def clear_match(self):
        self.provisioned_id = None
        self.provisioned_username = None
        self.provisioned_email = None
        self.provisioned_group_membership_id = None

    def set_match(self, identity: Identity, group_membership_id: Optional[str]):
        self.provisioned_id = identity.id
        self.provisioned_username = identity.username
        self.provisioned_email = identity.email
        self.provisioned_group_membership_id = group_membership_id

    @property
    def matched(self) -> bool:
        return self.provisioned_id is not None

    @property
    def source_group_membership(self) -> Optional[GroupMembership]:
        # A user holds at most one membership per group
        return self.group_memberships[0] if self.group_memberships else None

    @property
    def provisioned_label(self) -> str:
        return self.provisioned_email or self.provisioned_username or self.provisioned_id

    def __repr__(self):
        return f"CorrespondenceRecord(key={self.key!r}, provisioned_id={self.provisioned_id!r})"


class MembershipReconciler:
    """
    Carries group roles and org memberships from source identities to provisioned ones.

    Collaborators are passed in so tests can substitute fakes:
    ``sso_client`` needs fetch_identities(); ``membership_client`` needs the
    list, create, update and delete methods of MembershipClient.
    """

    def __init__(self, sso_client, membership_client, policy: MatchPolicy):
        self.sso_client = sso_client
        self.membership_client = membership_client
        self.policy = policy
        self.stats = self._new_stats()

    @staticmethod
    def _new_stats() -> Dict[str, Any]:
        return {
            'identities': 0,
            'source_identities': 0,
            'matched': 0,
            'unmatched': 0,
            'ambiguous': 0,
            'group_created': 0,
            'group_updated': 0,
            'org_deleted': 0,
            'org_created': 0,
            'conflicts': 0,
            'skipped': 0,
            'errors': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }

    def reconcile(self, group_id: str, identities: Optional[List[Identity]] = None) -> Dict[str, Any]:
        """
        Run scan, match and apply for one group.

        Args:
            group_id: Group to reconcile
            identities: Pre-filtered identity collection; fetched from the SSO
                connection when None

        Returns:
            Run statistics

        Raises:
            FetchError: If the identities or a source membership snapshot cannot be read
        """
        self.stats = self._new_stats()
        self.stats['start_time'] = datetime.now()

        if identities is None:
            identities = self._fetch_identities(group_id)
        self.stats['identities'] = len(identities)

        records = self.scan(group_id, identities)
        self.match(group_id, records, identities)
        self.apply(group_id, records)

        self.stats['end_time'] = datetime.now()
        self.stats['runtime_seconds'] = (self.stats['end_time'] - self.stats['start_time']).total_seconds()
        self._log_summary()
        return self.stats

    def _fetch_identities(self, group_id: str) -> List[Identity]:
        try:
            return self.sso_client.fetch_identities(group_id)
        except (TransportError, RemoteError) as e:
            raise FetchError(f"Failed to get SSO users of group {group_id}: {e}")

    def scan(self, group_id: str, identities: List[Identity]) -> Dict[str, CorrespondenceRecord]:
        """
        Build a record for every source-domain identity.

        Raises:
            FetchError: If a membership snapshot cannot be read
        """
        records = {}

        for identity in identities:
            if not is_source_identity(identity, self.policy.domain, self.policy.match_by_username):
                continue

            key = source_key(identity, self.policy.match_by_username)
            if key in records:
                logger.warning(f"Duplicate source User {key}, keeping the first one")
                continue

            try:
                group_memberships = self.membership_client.list_group_memberships(group_id, identity.id)
                org_memberships = self.membership_client.list_org_memberships(group_id, identity.id)
            except (TransportError, RemoteError) as e:
                raise FetchError(f"Failed to get memberships of User {key}: {e}")

            if not group_memberships:
                logger.warning(f"No existent Group membership found for User: {key}")

            records[key] = CorrespondenceRecord(key, identity, group_memberships, org_memberships)

        self.stats['source_identities'] = len(records)
        logger.info(f"Found {len(records)} Users of domain {self.policy.domain}")
        return records

    def match(self, group_id: str, records: Dict[str, CorrespondenceRecord],
              identities: List[Identity]) -> int:
        """
        Pair each record with its provisioned counterpart.

        Running it again over the same identities gives the same pairs.

        Returns:
            Number of matched records
        """
        matched = 0
        unmatched = 0
        ambiguous = 0

        for record in records.values():
            record.clear_match()
            counterpart, ignored = find_counterpart(record.source, identities, self.policy)

            if counterpart is None:
                unmatched += 1
                logger.warning(f"No provisioned User found for {record.key} ({self._expected(record.key)})")
                continue

            if ignored:
                ambiguous += 1
                logger.warning(f"{ignored} more provisioned Users match {record.key}, "
                               f"using the first one: {counterpart.describe()}")

            group_membership_id = None
            try:
                existing = self.membership_client.list_group_memberships(group_id, counterpart.id)
                if existing:
                    group_membership_id = existing[0].id
            except (TransportError, RemoteError) as e:
                logger.warning(f"No existent Group membership found for User: "
                               f"{counterpart.email or counterpart.username}: {e}")

            record.set_match(counterpart, group_membership_id)
            matched += 1
            logger.info(f"User: {record.key} -> {record.provisioned_label}")

        self.stats['matched'] = matched
        self.stats['unmatched'] = unmatched
        self.stats['ambiguous'] = ambiguous
        return matched

    def _expected(self, key: str) -> str:
        if self.policy.match_to_local_part:
            return f"username: {local_part(key)}"
        return f"email: {provisioned_email(key, self.policy.sso_domain)}"

    def apply(self, group_id: str, records: Dict[str, CorrespondenceRecord]):
        """Apply group and org membership changes for every matched record, ordered by key."""
        matched = sorted((r for r in records.values() if r.matched), key=lambda r: r.key)
        logger.info(f"Found {len(matched)} Users to synchronize")

        for index, record in enumerate(matched, start=1):
            logger.info(f"Start synchronization of memberships {index}/{len(matched)} "
                        f"User: {record.provisioned_label}")
            self.sync_group_membership(record)
            self.sync_org_memberships(group_id, record)

        logger.info("End synchronization of memberships")

    def _change(self, description: str, func, *args) -> bool:
        """
        Run one membership mutation.

        Returns:
            True if the change was made, False if it was already in place (409)

        Raises:
            ReconcileError: On any other failure
        """
        try:
            func(*args)
            return True
        except RemoteError as e:
            if e.is_conflict:
                self.stats['conflicts'] += 1
                logger.info(f"{description}: already in place")
                return False
            raise ReconcileError(f"Failed to {description}: {e}")
        except TransportError as e:
            raise ReconcileError(f"Failed to {description}: {e}")

    def _fail(self, error: ReconcileError):
        self.stats['errors'] += 1
        logger.error(str(error))

    def sync_group_membership(self, record: CorrespondenceRecord):
        """Give the provisioned identity the group role of the source identity."""
        source_membership = record.source_group_membership
        if source_membership is None or source_membership.group is None or source_membership.role is None:
            self.stats['skipped'] += 1
            logger.warning(f"Skipping Group membership of User: {record.provisioned_label}, "
                           f"{record.key} has no Group membership")
            return

        group = source_membership.group
        role = source_membership.role
        target = f"User: {record.provisioned_label}, Group: {group.label()}, Role: {role.label()}"

        try:
            if record.provisioned_group_membership_id:
                if self._change(f"update GroupMembership of {target}",
                                self.membership_client.update_group_membership_role,
                                group.id, record.provisioned_group_membership_id, role):
                    self.stats['group_updated'] += 1
                    logger.info(f"Updated GroupMembership of {target}")
            else:
                if self._change(f"create GroupMembership of {target}",
                                self.membership_client.create_group_membership,
                                group, role, record.provisioned_id):
                    self.stats['group_created'] += 1
                    logger.info(f"Created GroupMembership of {target}")
        except ReconcileError as e:
            self._fail(e)

    def sync_org_memberships(self, group_id: str, record: CorrespondenceRecord):
        """
        Replace the provisioned identity's org memberships with the source ones.

        Current memberships are read fresh since SSO provisioning may have
        added default ones after the scan.
        """
        label = record.provisioned_label

        try:
            current = self.membership_client.list_org_memberships(group_id, record.provisioned_id)
        except (TransportError, RemoteError) as e:
            self._fail(ReconcileError(f"Failed to get org memberships of User: {label}: {e}"))
            current = []

        for membership in current:
            if membership.org is None:
                self.stats['skipped'] += 1
                logger.warning(f"Skipping OrgMembership {membership.id} of User: {label} without an Org")
                continue
            try:
                if self._change(f"delete OrgMembership of User: {label}, Org: {membership.org.label()}",
                                self.membership_client.delete_org_membership,
                                membership.org.id, membership.id):
                    self.stats['org_deleted'] += 1
                    logger.info(f"Deleted OrgMembership of User: {label}, Org: {membership.org.label()}")
            except ReconcileError as e:
                self._fail(e)

        for membership in record.org_memberships:
            if membership.org is None or membership.role is None:
                self.stats['skipped'] += 1
                logger.warning(f"Skipping incomplete OrgMembership {membership.id} of {record.key}")
                continue

            target = f"User: {label}, Org: {membership.org.label()}, Role: {membership.role.label()}"
            try:
                if self._change(f"create OrgMembership of {target}",
                                self.membership_client.create_org_membership,
                                membership.org, membership.role, record.provisioned_id):
                    self.stats['org_created'] += 1
                    logger.info(f"Created OrgMembership of {target}")
            except ReconcileError as e:
                self._fail(e)

    def _log_summary(self):
        stats = self.stats
        logger.info("=== Reconciliation Summary ===")
        logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Identities scanned: {stats['identities']}")
        logger.info(f"Source Users: {stats['source_identities']}")
        logger.info(f"Matched: {stats['matched']}")
        logger.info(f"Unmatched: {stats['unmatched']}")
        logger.info(f"Ambiguous matches: {stats['ambiguous']}")
        logger.info(f"Group memberships created: {stats['group_created']}")
        logger.info(f"Group memberships updated: {stats['group_updated']}")
        logger.info(f"Org memberships deleted: {stats['org_deleted']}")
        logger.info(f"Org memberships created: {stats['org_created']}")
        logger.info(f"Conflicts (already in place): {stats['conflicts']}")
        logger.info(f"Skipped: {stats['skipped']}")
        logger.info(f"Errors: {stats['errors']}")
