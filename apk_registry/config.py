"""
APK REGISTRY CONFIGURATION

Network-wide constants for the quorum aggregate public key registry.
"""

CHAIN_ID = "apk-registry-mainnet"
BLOCK_TIME = 3

# Quorum numbers are single bytes on the wire (0..255)
MAX_QUORUM_COUNT = 256

# keccak256(abi.encode(0, 0)) - hash of the BN254 G1 identity encoded as (0, 0)
ZERO_PK_HASH = "0xad3228b676f7d3cd4284a5443f17f1962b36e491b30a40b2405849e597ba5fb5"

# Domain separator mixed into every pubkey registration message
PUBKEY_REGISTRATION_DOMAIN = "BN254PubkeyRegistration"

DEFAULT_DB_PATH = "registry_data/apk_registry.db"

# Explorer
DEFAULT_EXPLORER_PORT = 8080
EXPLORER_CACHE_TTL = 5  # seconds before the explorer reloads the database

# Print one line per registry mutation
VERBOSE_LOGGING = False
