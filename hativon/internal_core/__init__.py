from .config import AutosaveConfig, load_config
from .draft_store import DraftRecord, DraftStore, InMemoryDraftStore, SqliteDraftStore

__all__ = [
    "AutosaveConfig",
    "DraftRecord",
    "DraftStore",
    "InMemoryDraftStore",
    "SqliteDraftStore",
    "load_config",
]
