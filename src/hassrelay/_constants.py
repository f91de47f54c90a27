"""Internal constants shared across the library."""

LISTEN_ENTITIES_HEADER = "hass-listen-entities"
STATE_CHANGED_EVENT = "state_changed"
WEBSOCKET_PATH = "/api/websocket"

DEFAULT_LISTEN = "[::1]:8080"
DEFAULT_HASS_SERVER = "localhost"
DEFAULT_HASS_PORT = 8123

DEFAULT_QUEUE_SIZE = 1024
DEFAULT_HANDSHAKE_TIMEOUT = 10.0
DEFAULT_AUTH_TIMEOUT = 10.0
DEFAULT_WORKERS = 4

# Home Assistant WebSocket API message types.
MSG_AUTH_REQUIRED = "auth_required"
MSG_AUTH = "auth"
MSG_AUTH_OK = "auth_ok"
MSG_AUTH_INVALID = "auth_invalid"
MSG_RESULT = "result"
MSG_EVENT = "event"
MSG_GET_STATES = "get_states"
MSG_SUBSCRIBE_EVENTS = "subscribe_events"
