"""Cross-session coordination: shared storage, broadcast and election."""

from notifier_hub.coordination.broadcast import (
    BroadcastChannel,
    LocalBroadcastHub,
    UnixDatagramTransport,
    open_broadcast_channel,
)
from notifier_hub.coordination.election import ElectionState, LeaderElection
from notifier_hub.coordination.storage import (
    AtomicSharedStorage,
    LibsqlStorage,
    MemoryStorage,
    SharedStorage,
)

__all__ = [
    "AtomicSharedStorage",
    "BroadcastChannel",
    "ElectionState",
    "LeaderElection",
    "LibsqlStorage",
    "LocalBroadcastHub",
    "MemoryStorage",
    "SharedStorage",
    "UnixDatagramTransport",
    "open_broadcast_channel",
]
