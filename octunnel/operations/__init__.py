"""Operations (browser launching, vault sync)"""
from .browser import open_url, open_and_wait
from .vault_sync import sync_vault, changed_entries

__all__ = [
    "open_url", "open_and_wait",
    "sync_vault", "changed_entries",
]
