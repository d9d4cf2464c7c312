"""Constant definitions for notifier-hub."""

# Leader election
LEADER_KEY = "notifier-leader"
HEARTBEAT_INTERVAL_SECONDS = 2.0
TIMEOUT_MULTIPLIER = 5  # Leader is considered dead after 5 missed heartbeats
STALE_MULTIPLIER = 10  # Records this many timeouts old are cleared eagerly
MAX_START_JITTER_SECONDS = 0.5
CONFIRM_DELAY_SECONDS = 0.05

# Broadcast channel
BROADCAST_CHANNEL_NAME = "notifier-hub"
BROADCAST_SOCKET_DIR = "/tmp/notifier-hub"  # noqa: S108
MAX_DATAGRAM_BYTES = 64 * 1024

# Message store
MAX_MESSAGES = 500

# Relay suppression
RELAY_WINDOW_SECONDS = 5.0
RELAY_HISTORY_SIZE = 50

# Allow-list of prefixes that relay bots put in front of echoed content.
# Applied repeatedly, case-insensitively, at the start of the content.
RELAY_PREFIX_PATTERNS = (
    # **[Telegram] alice**: / [Discord] bob: / [TG] carol:
    r"^\*{0,2}\[(?:telegram|discord|twitch|tg|dc|ttv)\]\s*[^:\n]{1,64}?\*{0,2}:\s*",
    # Bare platform tag
    r"^\*{0,2}\[(?:telegram|discord|twitch|tg|dc|ttv)\]\*{0,2}\s*",
    # Lookalike letters some bridges use to dodge filters (Cyrillic е/а/о)
    r"^\[(?:t[eе]l[eе]gr[aа]m|d[iі]sc[oо]rd|tw[iі]tch)\]\s*(?:[^:\n]{1,64}?:\s*)?",
    # Generic "[source] user:" form
    r"^\[[^\]\n]{1,32}\]\s+[^:\n]{1,64}?:\s*",
    # Reply indicators: "↩️ Replying to bob: ..." / "Replying to bob:"
    r"^(?:↩️|↩|↪️|↪|➥|⤷|╰|┗)?\s*replying to [^:\n]{1,64}:\s*",
    # Bare reply glyphs
    r"^(?:↩️|↩|↪️|↪|➥|⤷|╰|┗|>)\s*",
)

# Platform adapters
RECONNECT_STEP_SECONDS = 2.0
RECONNECT_MAX_DELAY_SECONDS = 10.0
MAX_RECONNECT_ATTEMPTS = 5

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_LONG_POLL_SECONDS = 30

TWITCH_IRC_HOST = "irc.chat.twitch.tv"
TWITCH_IRC_PORT = 6697
TWITCH_PING_INTERVAL_SECONDS = 240.0

TWITCH_HELIX_BASE = "https://api.twitch.tv/helix"
TWITCH_EVENTSUB_URL = "wss://eventsub.wss.twitch.tv/ws"
TWITCH_KEEPALIVE_SECONDS = 10  # Used until the welcome message says otherwise
TWITCH_KEEPALIVE_GRACE_SECONDS = 5.0
STREAM_NOTIFICATIONS_CHANNEL_ID = "stream-notifications"
STREAM_NOTIFICATIONS_CHANNEL_NAME = "Stream Notifications"
STREAM_ALERT_MEMORY = 256  # Stream ids remembered to drop repeated alerts
