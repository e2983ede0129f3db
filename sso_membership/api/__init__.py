"""
Directory API access layer.

Transport, pagination, and the SSO and membership resource clients.
"""
