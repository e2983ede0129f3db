"""
SSO Membership Sync - Carry group roles and org memberships over to SSO-provisioned users.

This package reconciles the memberships held by users of a source email domain
onto their counterparts provisioned through a group's SSO connection.
"""

__version__ = "1.0.0"
__author__ = "SSO Membership Sync Team"
