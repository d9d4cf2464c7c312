"""Per-session state stores consumed by the UI layer."""

from notifier_hub.stores.connections import ConnectionStore
from notifier_hub.stores.messages import MessageFilter, MessageStore, UnreadCounts

__all__ = ["ConnectionStore", "MessageFilter", "MessageStore", "UnreadCounts"]
