"""Utility modules for DogeNode."""

from dogenode.utils.locks import account_lock, get_account_lock

__all__ = ["account_lock", "get_account_lock"]
