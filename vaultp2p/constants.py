# vaultp2p wire constants (numeric keys and frame types)

PROTOCOL_VERSION = 1

# Frame keys
K_V = 0
K_T = 1
K_SRC = 2
K_BODY = 3

# Frame types (control plane is unencrypted, DATA carries an Envelope)
T_PING = 1
T_HELLO = 2
T_REJECT = 3
T_ROSTER = 4

T_DATA = 10

CONTROL_TYPES = (T_PING, T_HELLO, T_REJECT, T_ROSTER)

# HELLO body keys
B_HELLO_ID = 0
B_HELLO_DEVICE = 1

# REJECT body keys
B_REJECT_REASON = 0
B_REJECT_MESSAGE = 1

REJECT_ROOM_FULL = "room-full"

# ROSTER entry keys
B_PEER_ID = 0
B_PEER_DEVICE = 1

# Plaintext type tags (first byte of every decrypted DATA payload)
P_META = 0x01
P_CHUNK = 0x02

# META body keys
B_META_ID = 0
B_META_NAME = 1
B_META_SIZE = 2
B_META_SHA256 = 3

TRANSFER_ID_LEN = 8

# AES-GCM
NONCE_LEN = 12
KEY_LEN = 32
TAG_LEN = 16

# Design values
CHUNK_SIZE = 16 * 1024
DIRECT_TIMEOUT_S = 7.0
TOTAL_TIMEOUT_S = 25.0
KEEPALIVE_INTERVAL_S = 2.0
RECONNECT_DELAY_S = 2.0

# Device class used when a peer announces none (or junk)
DEVICE_DESKTOP = "desktop"

DEVICE_MAX_CHARS = 32
NAME_MAX_CHARS = 255
