"""
Dropshare - Global Constants and Configuration Values

This module defines all constants used throughout the Dropshare package.
All magic numbers and configuration defaults are centralized here.

Author: orpheus497
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Dropshare"
AUTHOR = "orpheus497"

# File Transfer Constants
FILE_CHUNK_SIZE = 64 * 1024  # 64 KB chunks
MAX_FILE_SIZE = 2 * 1024 * 1024 * 1024  # 2 GB
CHUNK_SEND_DELAY = 0.01  # seconds between chunk sends
MAX_CHUNK_SIZE = 512 * 1024  # largest chunk whose encoded frame fits MAX_MESSAGE_SIZE
CLEARTEXT_FALLBACK = True  # send cleartext when chunk encryption fails

# Cryptography Constants
KEY_SIZE = 32  # 256 bits for AES-256-GCM
IV_SIZE = 12  # 96 bits for GCM
TAG_SIZE = 16  # GCM authentication tag
PRIVATE_KEY_SIZE = 32  # secp256k1 scalar
PUBLIC_KEY_SIZE = 33  # compressed secp256k1 point
SIGNATURE_SIZE = 64  # compact r || s
CHALLENGE_SIZE = 32
HKDF_INFO = b"dropshare"

# Session Constants
DISCONNECT_GRACE_PERIOD = 0.1  # seconds before closing a removed peer
MUTUAL_AUTHENTICATION = False

# Message Limits
MAX_MESSAGE_SIZE = 1024 * 1024  # 1 MB, comfortably above one encoded chunk
MAX_DISPLAY_NAME_LENGTH = 64
MAX_FILE_NAME_LENGTH = 255

# Protocol Version
PROTOCOL_VERSION = 1

# File Paths
DEFAULT_DATA_DIR = "~/.dropshare"
CONFIG_FILENAME = "config.toml"
DEFAULT_DOWNLOAD_DIR = "~/Downloads"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_LEVEL = "INFO"

# Display name generation
NAME_ADJECTIVES = (
    "Amber", "Brave", "Calm", "Clever", "Eager", "Gentle", "Happy", "Jolly",
    "Kind", "Lively", "Lucky", "Mellow", "Nimble", "Proud", "Quiet", "Swift",
)
NAME_ANIMALS = (
    "Badger", "Beaver", "Crane", "Dolphin", "Falcon", "Fox", "Heron", "Koala",
    "Lynx", "Otter", "Panda", "Puffin", "Raven", "Seal", "Tiger", "Wombat",
)
