"""Provider session lifecycle and credential persistence."""

from src.extraction.auth.manager import AuthManager, SessionState, classify_login_error
from src.extraction.auth.storage import (
    CredentialStore,
    SupabaseCredentialStore,
    clean_user_id,
)

__all__ = [
    "AuthManager",
    "CredentialStore",
    "SessionState",
    "SupabaseCredentialStore",
    "classify_login_error",
    "clean_user_id",
]
