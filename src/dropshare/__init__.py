"""
Dropshare - Encrypted Peer-to-Peer File Sharing

Peers authenticate each other with an ECDH key agreement and a signed
challenge, then exchange file manifests and stream files in AES-256-GCM
encrypted chunks over any ordered message channel.

Author: orpheus497
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "orpheus497"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .connection_fsm import ConnectionStatus
from .constants import APP_NAME, VERSION
from .errors import (
    AuthenticationFailure,
    ChannelError,
    ConfigError,
    CryptoError,
    CryptoInitError,
    DecryptionError,
    DropshareError,
    EncryptionError,
    ErrorCode,
    FileTransferError,
    HandshakeError,
    NetworkError,
    ProtocolError,
)
from .manager import SessionManager
from .transport import Channel, LoopbackNetwork, Transport

__all__ = [
    "APP_NAME",
    "VERSION",
    "AuthenticationFailure",
    "Channel",
    "ChannelError",
    "Config",
    "ConfigError",
    "ConnectionStatus",
    "CryptoError",
    "CryptoInitError",
    "DecryptionError",
    "DropshareError",
    "EncryptionError",
    "ErrorCode",
    "FileTransferError",
    "HandshakeError",
    "LoopbackNetwork",
    "NetworkError",
    "ProtocolError",
    "SessionManager",
    "Transport",
    "__author__",
    "__license__",
    "__version__",
]
