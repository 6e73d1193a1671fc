"""Host profile and runtime settings."""
from .profile import HostProfile, profile_search_paths, substitute
from .settings import Settings

__all__ = ["HostProfile", "profile_search_paths", "substitute", "Settings"]
