"""
Dropshare - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the Dropshare package. Each error has a unique code for logging and debugging.

Author: orpheus497
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Dropshare error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E003_FILE_NOT_FOUND = "E003"
    E005_OPERATION_FAILED = "E005"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_KEY_GENERATION_FAILED = "E104"
    E105_SIGNATURE_FAILED = "E105"
    E106_VERIFICATION_FAILED = "E106"
    E108_KEY_DERIVATION_FAILED = "E108"
    E109_AUTHENTICATION_FAILED = "E109"

    # Network Errors (E200-E299)
    E200_NETWORK_ERROR = "E200"
    E203_CONNECTION_CLOSED = "E203"
    E204_SEND_FAILED = "E204"
    E206_INVALID_MESSAGE = "E206"
    E207_MESSAGE_TOO_LARGE = "E207"
    E209_HANDSHAKE_FAILED = "E209"
    E210_UNKNOWN_PEER = "E210"

    # File Transfer Errors (E600-E699)
    E600_FILE_TRANSFER_ERROR = "E600"
    E601_FILE_TOO_LARGE = "E601"
    E602_CHUNK_FAILED = "E602"
    E605_TRANSFER_CANCELLED = "E605"
    E606_INVALID_CHUNK = "E606"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_CONFIG_INVALID_VALUE = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class DropshareError(Exception):
    """Base exception class for all Dropshare errors.

    All custom exceptions in Dropshare inherit from this class.
    Provides standardized error handling and logging.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a Dropshare error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(DropshareError):
    """Exception raised for cryptographic operation failures.

    This includes encryption, decryption, key generation, signing,
    and key derivation.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class CryptoInitError(CryptoError):
    """Raised when local key material cannot be generated.

    Fatal to starting a session; never retried.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E104_KEY_GENERATION_FAILED,
        message: str = "Key generation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class EncryptionError(CryptoError):
    """Raised when a chunk cannot be encrypted."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E101_ENCRYPTION_FAILED,
        message: str = "Encryption failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class DecryptionError(CryptoError):
    """Raised when a received chunk cannot be decrypted.

    The affected transfer is aborted; no partial output is delivered.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E102_DECRYPTION_FAILED,
        message: str = "Decryption failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class AuthenticationFailure(DecryptionError):
    """Raised when an AES-GCM tag does not verify (tampered data or wrong key)."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E109_AUTHENTICATION_FAILED,
        message: str = "Authentication tag verification failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class NetworkError(DropshareError):
    """Exception raised for network operation failures.

    This includes channel failures, send failures, and protocol violations.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_NETWORK_ERROR,
        message: str = "Network operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ProtocolError(NetworkError):
    """Raised for messages that cannot be decoded (unknown tag, bad fields)."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E206_INVALID_MESSAGE,
        message: str = "Invalid protocol message",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class HandshakeError(NetworkError):
    """Raised for malformed key material or failed challenge verification."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E209_HANDSHAKE_FAILED,
        message: str = "Handshake failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ChannelError(NetworkError):
    """Raised when the underlying message channel closes or fails."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E203_CONNECTION_CLOSED,
        message: str = "Channel closed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class FileTransferError(DropshareError):
    """Exception raised for file transfer failures.

    This includes chunking, transmission, and reassembly errors.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E600_FILE_TRANSFER_ERROR,
        message: str = "File transfer operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(DropshareError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
