from typing import Literal

SERVER_URI: str = "ws://localhost:3000"
DEBUG_SERVER_DISABLE_SSL: bool = True

CONNECTION_TIMEOUT = 10.0 # seconds
RECONNECT_DELAY = 3.0 # seconds
MAX_RECONNECT_ATTEMPTS = 5

ICE_SERVERS_URLS = [
    # google public stun servers
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]
ICE_TRANSPORT_POLICY: Literal["all", "relay"] = "all"

COMMAND_CHANNEL_ID = "commands"
TELEMETRY_CHANNEL_ID = "telemetry"

STATS_INTERVAL = 1.0 # seconds

AUTO_CONNECT = True # offer to every robot announced by the server
PEER_RETRY_DELAY = 3.0 # seconds

# "answer": an inbound offer always wins over our pending one
# "compare": the lower identity keeps its own offer
GLARE_POLICY: Literal["answer", "compare"] = "answer"
