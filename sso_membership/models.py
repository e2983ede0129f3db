"""
Directory resource models.

Plain value objects parsed from JSON:API documents. Optional attributes are
None when the directory omits them, which is kept distinct from an empty
string.
"""

from typing import Dict, Any, Optional

TYPE_USER = 'user'
TYPE_GROUP = 'group'
TYPE_ORG = 'org'
TYPE_ROLE = 'role'
TYPE_GROUP_MEMBERSHIP = 'group_membership'
TYPE_ORG_MEMBERSHIP = 'org_membership'


def _attributes(resource: Dict[str, Any]) -> Dict[str, Any]:
    return (resource or {}).get('attributes') or {}


class Identity:
    """A user known to the group's SSO connection."""

    def __init__(self, id: str, email: Optional[str] = None, username: Optional[str] = None,
                 display_name: Optional[str] = None, active: Optional[bool] = None):
        self.id = id
        self.email = email
        self.username = username
        self.display_name = display_name
        self.active = active

    @classmethod
    def from_api(cls, resource: Dict[str, Any]) -> 'Identity':
        attributes = _attributes(resource)
        return cls(
            id=resource.get('id'),
            email=attributes.get('email'),
            username=attributes.get('username'),
            display_name=attributes.get('name'),
            active=attributes.get('active')
        )

    def describe(self) -> str:
        """Short human readable label for log lines."""
        return f"username: {self.username}, email: {self.email}"

    def __eq__(self, other):
        if not isinstance(other, Identity):
            return NotImplemented
        return (self.id, self.email, self.username, self.display_name, self.active) == \
            (other.id, other.email, other.username, other.display_name, other.active)

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        return f"Identity(id={self.id!r}, username={self.username!r}, email={self.email!r})"


class Ref:
    """Typed pointer to another resource, as carried in relationship payloads."""

    def __init__(self, id: str, type: str, display_name: Optional[str] = None):
        self.id = id
        self.type = type
        self.display_name = display_name

    @classmethod
    def from_relationship(cls, relationship: Optional[Dict[str, Any]]) -> Optional['Ref']:
        data = (relationship or {}).get('data')
        if not data or not data.get('id'):
            return None
        return cls(data['id'], data.get('type'), _attributes(data).get('name'))

    def to_data(self) -> Dict[str, str]:
        """Relationship data object, without the display name."""
        return {'id': self.id, 'type': self.type}

    def label(self) -> str:
        return self.display_name or self.id

    def __eq__(self, other):
        # display_name is informational only
        if not isinstance(other, Ref):
            return NotImplemented
        return (self.id, self.type) == (other.id, other.type)

    def __hash__(self):
        return hash((self.id, self.type))

    def __repr__(self):
        return f"Ref(id={self.id!r}, type={self.type!r})"


class _Membership:
    container_key = None

    def __init__(self, id: str, container: Optional[Ref], role: Optional[Ref], user: Optional[Ref]):
        self.id = id
        self.role = role
        self.user = user
        setattr(self, self.container_key, container)

    @classmethod
    def from_api(cls, resource: Dict[str, Any]):
        relationships = (resource or {}).get('relationships') or {}
        return cls(
            resource.get('id'),
            Ref.from_relationship(relationships.get(cls.container_key)),
            Ref.from_relationship(relationships.get('role')),
            Ref.from_relationship(relationships.get('user'))
        )

    def __repr__(self):
        container = getattr(self, self.container_key)
        return (f"{type(self).__name__}(id={self.id!r}, {self.container_key}={container!r}, "
                f"role={self.role!r}, user={self.user!r})")


class GroupMembership(_Membership):
    """Membership of a user in a group, carrying the group role."""
    container_key = 'group'


class OrgMembership(_Membership):
    """Membership of a user in one organization of the group."""
    container_key = 'org'
