# =============================================================================
# PW Client -- Constants
# =============================================================================
#
# Endpoints, rate limits and timings used by the game and API clients.
# =============================================================================

CLIENT_VERSION = "0.4.0"

# -- Endpoints -----------------------------------------------------------------

ENDPOINT_API = "https://api.pw-staging.rnc.priddle.nl"
ENDPOINT_GAME_HTTP = "https://server.pw-staging.rnc.priddle.nl"
ENDPOINT_GAME_WS = "wss://server.pw-staging.rnc.priddle.nl"
ENDPOINT_CLIENT = "https://client.pw-staging.rnc.priddle.nl"

# Collection holding world minimaps
MINIMAP_COLLECTION = "rhrbt6wqhc4s0cp"

# -- Timing (seconds) --------------------------------------------------------

CONNECTION_TIMEOUT = 10.0
INIT_TIMEOUT = 10.0
INIT_REDELIVERY_DELAY = 1.5
HTTP_TIMEOUT = 15.0

# -- Reconnection -------------------------------------------------------------

RECONNECT_MAX_ATTEMPTS = 5
RECONNECT_INTERVAL = 4.0
RECONNECT_ATTEMPT_WINDOW = 10.0

# -- Rate limits (tokens per interval) ---------------------------------------

BUCKET_INTERVAL = 1.0

BULK_TOKEN_LIMIT = 100
CHAT_TOKEN_LIMIT = 10

# Applied once the init packet tells us the player's role
OWNER_BULK_TOKEN_LIMIT = 200
OWNER_CHAT_TOKEN_LIMIT = 10
PLAYER_BULK_TOKEN_LIMIT = 125
PLAYER_CHAT_TOKEN_LIMIT = 5

# -- Packets -------------------------------------------------------------------

INIT_PACKET = "player_init"
INIT_ACK_PACKET = "player_init_received"
PING_PACKET = "ping"
CHAT_PACKET = "player_chat"

# Values accepted in GameClientSettings.handled_packets
HANDLE_PING = "PING"
HANDLE_INIT = "INIT"

# -- Messages ------------------------------------------------------------------

MAX_MESSAGE_SIZE = 1_048_576  # 1 MB

# -- WebSocket close codes -----------------------------------------------------

WS_CLOSE_NORMAL = 1000
WS_CLOSE_ABNORMAL = 1006
