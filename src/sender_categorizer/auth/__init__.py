"""Authentication for Microsoft Graph API (MSAL device code flow)."""

from sender_categorizer.auth.msal_auth import GraphAuth, cache_path_for_user

__all__ = ["GraphAuth", "cache_path_for_user"]
