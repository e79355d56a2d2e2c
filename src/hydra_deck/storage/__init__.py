"""Persistence utilities for Hydra Deck profiles."""

from .profile_store import GROUPS_FILE, SESSIONS_FILE, ProfileStore, ProfileStoreError, list_profiles

__all__ = ["GROUPS_FILE", "ProfileStore", "ProfileStoreError", "SESSIONS_FILE", "list_profiles"]
