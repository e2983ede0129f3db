"""
Identity matching policy.

Pure functions deciding which identities belong to the source domain, which
identity is the SSO-provisioned counterpart of a source identity, and how
identity collections are narrowed down for the CLI commands.
"""

import logging
from email.utils import parseaddr
from typing import Iterable, List, Optional, Tuple

from sso_membership.models import Identity

logger = logging.getLogger(__name__)


class MatchPolicy:
    """
    Matching settings for one run.

    Attributes:
        domain: Source email domain, e.g. ``example.com``
        sso_domain: Domain of the provisioned identities, e.g. ``sso.example.com``
        match_by_username: Classify and key source identities by username instead of email
        match_to_local_part: Find counterparts by username equal to the source local part
            instead of by email ``<local part>@<sso_domain>``
    """

    def __init__(self, domain: Optional[str] = None, sso_domain: Optional[str] = None,
                 match_by_username: bool = False, match_to_local_part: bool = False):
        self.domain = domain
        self.sso_domain = sso_domain
        self.match_by_username = match_by_username
        self.match_to_local_part = match_to_local_part

    def __repr__(self):
        return (f"MatchPolicy(domain={self.domain!r}, sso_domain={self.sso_domain!r}, "
                f"match_by_username={self.match_by_username}, "
                f"match_to_local_part={self.match_to_local_part})")


def is_valid_email(value: Optional[str]) -> bool:
    """
    Check that a value parses as an RFC 5322 address with a non-empty local part and domain.

    Args:
        value: Candidate address, optionally with a display name

    Returns:
        True if the value is a usable email address
    """
    if not value or not isinstance(value, str):
        return False

    _, address = parseaddr(value)
    if not address or '@' not in address:
        return False
    if any(ch.isspace() for ch in address):
        return False

    local, _, domain = address.rpartition('@')
    if not local or not domain:
        return False
    if domain.startswith('.') or domain.endswith('.') or '..' in domain:
        return False
    return True


def local_part(value: Optional[str]) -> Optional[str]:
    """Return the part of an address before the first ``@``, or None."""
    if not value or '@' not in value:
        return None
    return value.split('@', 1)[0] or None


def provisioned_email(key: Optional[str], sso_domain: Optional[str]) -> Optional[str]:
    """
    Build the email the provisioned counterpart is expected to carry.

    Returns None when the key is not a valid address or no SSO domain is set,
    which disables email based destination matching for that identity.
    """
    if not sso_domain or not is_valid_email(key):
        return None
    return f"{local_part(key)}@{sso_domain}"


def profile_id(identity: Identity, match_by_username: bool) -> Optional[str]:
    """Field used to identify a user: username when matching by username, else email."""
    if match_by_username and identity.username is not None:
        return identity.username
    return identity.email


def source_key(identity: Identity, match_by_username: bool) -> Optional[str]:
    """Key a source identity is tracked under during reconciliation."""
    return identity.username if match_by_username else identity.email


def is_source_identity(identity: Identity, domain: Optional[str], match_by_username: bool) -> bool:
    """
    Decide whether an identity belongs to the source domain.

    Args:
        identity: Identity to classify
        domain: Source domain; an empty domain never matches
        match_by_username: Test the username instead of the email

    Returns:
        True if the identity is a source identity
    """
    if not domain:
        return False

    suffix = '@' + domain
    if match_by_username:
        return identity.username is not None and identity.username.endswith(suffix)

    if identity.email is None or not identity.email.endswith(suffix):
        return False
    # A username that is not an address would yield meaningless local parts
    return is_valid_email(identity.username)


def is_destination_identity(identity: Identity, source_local_part: Optional[str],
                            expected_email: Optional[str], match_to_local_part: bool) -> bool:
    """
    Decide whether an identity is the provisioned counterpart of a source identity.

    Args:
        identity: Candidate identity
        source_local_part: Local part of the source key
        expected_email: ``<local part>@<sso domain>``, None if it could not be built
        match_to_local_part: Compare usernames to the local part instead of emails

    Returns:
        True if the candidate matches
    """
    if match_to_local_part:
        return source_local_part is not None and identity.username == source_local_part
    return expected_email is not None and identity.email == expected_email


def find_counterpart(source: Identity, identities: Iterable[Identity],
                     policy: MatchPolicy) -> Tuple[Optional[Identity], int]:
    """
    Find the first provisioned counterpart of a source identity.

    Args:
        source: Source identity
        identities: Full identity collection, in directory order
        policy: Matching settings

    Returns:
        Tuple of (first matching identity or None, number of further candidates ignored)
    """
    key = source_key(source, policy.match_by_username)
    wanted_local_part = local_part(key)
    wanted_email = provisioned_email(key, policy.sso_domain)

    match = None
    ignored = 0
    for candidate in identities:
        if candidate.id == source.id:
            continue
        if not is_destination_identity(candidate, wanted_local_part, wanted_email,
                                       policy.match_to_local_part):
            continue
        if match is None:
            match = candidate
        else:
            ignored += 1

    return match, ignored


def filter_by_domain(identities: Iterable[Identity], domain: str,
                     match_by_username: bool) -> List[Identity]:
    """Keep identities whose profile id ends with ``@domain``."""
    suffix = '@' + domain
    filtered = []
    for identity in identities:
        value = profile_id(identity, match_by_username)
        if domain and value is not None and value.endswith(suffix):
            filtered.append(identity)

    if filtered:
        logger.info(f"Filtered {len(filtered)} users matching domain: {domain}")
    else:
        logger.warning(f"No users found matching domain: {domain}")
    return filtered


def filter_by_identifiers(identifiers: Iterable[str], identities: List[Identity],
                          match_by_username: bool) -> List[Identity]:
    """Keep the first identity whose profile id equals each identifier."""
    identifiers = list(identifiers)
    filtered = []
    for identifier in identifiers:
        for identity in identities:
            if identifier and profile_id(identity, match_by_username) == identifier:
                filtered.append(identity)
                break

    if filtered:
        logger.info(f"Filtered {len(filtered)} users matching {len(identifiers)} identifiers")
    else:
        logger.warning(f"No users found matching identifiers: {identifiers}")
    return filtered


def filter_with_counterparts(identifiers: Iterable[str], identities: List[Identity],
                             policy: MatchPolicy) -> List[Identity]:
    """
    Keep each listed source identity together with its provisioned counterpart.

    Args:
        identifiers: Source emails or usernames, e.g. from a CSV file
        identities: Full identity collection
        policy: Matching settings

    Returns:
        Identities in identifier order, each at most once
    """
    filtered = []
    seen = set()

    def keep(identity):
        if identity.id not in seen:
            seen.add(identity.id)
            filtered.append(identity)

    for identifier in identifiers:
        if not is_valid_email(identifier):
            logger.error(f"Invalid email address format: {identifier}")

        source = None
        for identity in identities:
            if profile_id(identity, policy.match_by_username) == identifier:
                source = identity
                break

        if source is None:
            logger.warning(f"User {identifier} not found in SSO")
            continue
        keep(source)

        counterpart, _ = find_counterpart(source, identities, policy)
        if counterpart is None:
            if policy.match_to_local_part:
                expected = f"username: {local_part(identifier)}"
            else:
                expected = f"email: {provisioned_email(identifier, policy.sso_domain)}"
            logger.warning(f"Email {identifier} not found in SSO with a corresponding User: {expected}")
            continue
        keep(counterpart)

    return filtered
