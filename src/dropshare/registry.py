"""
Dropshare - Peer session registry.

Created by orpheus497

Tracks per-peer key material, verification status and the challenge
currently awaiting an answer. The registry performs no I/O; every
operation is a local state mutation that never blocks.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from . import crypto
from .errors import CryptoError, ErrorCode, HandshakeError, NetworkError

logger = logging.getLogger(__name__)


@dataclass
class PeerSession:
    """Key material and verification state for one peer.

    Attributes:
        peer_id: Opaque identity assigned by the transport
        name: Display name announced by the peer (if any)
        dh_public_key: Peer's key agreement public key
        signing_public_key: Peer's signing public key
        shared_key: Derived 256-bit session key
        is_verified: True once the peer answered our challenge correctly
        outstanding_challenge: Challenge sent to the peer and not yet answered
        keys_sent: Whether our own public keys went out to this peer
        remote_confirmed: Whether the peer sent VERIFICATION_COMPLETE
        challenge_issued: Whether we challenged this peer at least once
        challenge_answered: Whether we signed a challenge from this peer
    """

    peer_id: str
    name: Optional[str] = None
    dh_public_key: Optional[bytes] = None
    signing_public_key: Optional[bytes] = None
    shared_key: Optional[bytes] = None
    is_verified: bool = False
    outstanding_challenge: Optional[bytes] = None
    keys_sent: bool = False
    remote_confirmed: bool = False
    challenge_issued: bool = False
    challenge_answered: bool = False

    def __repr__(self) -> str:
        return (
            f"PeerSession(peer_id={self.peer_id!r}, name={self.name!r}, "
            f"has_key={self.shared_key is not None}, verified={self.is_verified})"
        )


class PeerRegistry:
    """Per-peer session records keyed by transport peer id."""

    def __init__(self):
        self._sessions: Dict[str, PeerSession] = {}

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._sessions

    def __iter__(self) -> Iterator[PeerSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, peer_id: str) -> Optional[PeerSession]:
        return self._sessions.get(peer_id)

    def _require(self, peer_id: str) -> PeerSession:
        session = self._sessions.get(peer_id)
        if session is None:
            raise NetworkError(
                ErrorCode.E210_UNKNOWN_PEER,
                f"No session for peer {peer_id}",
                {"peer_id": peer_id},
            )
        return session

    def register(self, peer_id: str, name: Optional[str] = None) -> PeerSession:
        """
        Register a peer, or return its existing session.

        A name passed for an existing session replaces the stored one.
        """
        session = self._sessions.get(peer_id)
        if session is None:
            session = PeerSession(peer_id=peer_id, name=name)
            self._sessions[peer_id] = session
            logger.info(f"Registered peer {peer_id}")
        elif name is not None:
            session.name = name
        return session

    def record_peer_public_keys(
        self, peer_id: str, dh_public_key: bytes, signing_public_key: bytes
    ) -> PeerSession:
        """
        Store the peer's public keys after validating them.

        Raises:
            HandshakeError: If either key is not a valid compressed point, or
                differs from keys already recorded for the peer
        """
        session = self._require(peer_id)
        try:
            crypto.validate_public_key(dh_public_key)
            crypto.validate_public_key(signing_public_key)
        except CryptoError as e:
            raise HandshakeError(
                ErrorCode.E209_HANDSHAKE_FAILED,
                f"Malformed public key from {peer_id}: {e.message}",
                {"peer_id": peer_id},
            )

        if session.dh_public_key is not None and (
            session.dh_public_key != dh_public_key
            or session.signing_public_key != signing_public_key
        ):
            # Keys are fixed for the lifetime of a session
            raise HandshakeError(
                ErrorCode.E209_HANDSHAKE_FAILED,
                f"Peer {peer_id} changed its public keys mid-session",
                {"peer_id": peer_id},
            )

        session.dh_public_key = dh_public_key
        session.signing_public_key = signing_public_key
        return session

    def derive_and_store_shared_key(self, peer_id: str, local_private: bytes) -> bytes:
        """
        Derive the session key from our private key and the peer's public key.

        Idempotent: an existing key is returned untouched.

        Raises:
            HandshakeError: If the peer's keys are missing or derivation fails
        """
        session = self._require(peer_id)
        if session.shared_key is not None:
            return session.shared_key

        if session.dh_public_key is None:
            raise HandshakeError(
                ErrorCode.E209_HANDSHAKE_FAILED,
                f"No public key recorded for {peer_id}",
                {"peer_id": peer_id},
            )

        try:
            session.shared_key = crypto.derive_shared_key(local_private, session.dh_public_key)
        except CryptoError as e:
            raise HandshakeError(
                ErrorCode.E209_HANDSHAKE_FAILED,
                f"Key derivation failed for {peer_id}: {e.message}",
                {"peer_id": peer_id},
            )

        logger.debug(f"Derived shared key for {peer_id}")
        return session.shared_key

    def issue_challenge(self, peer_id: str) -> bytes:
        """Create a challenge for the peer, replacing any unanswered one."""
        session = self._require(peer_id)
        if session.outstanding_challenge is not None:
            logger.debug(f"Replacing unanswered challenge for {peer_id}")
        session.outstanding_challenge = crypto.generate_challenge()
        session.challenge_issued = True
        return session.outstanding_challenge

    def consume_challenge(self, peer_id: str) -> Optional[bytes]:
        """Take the outstanding challenge, clearing it. None if there is none."""
        session = self._sessions.get(peer_id)
        if session is None:
            return None
        challenge = session.outstanding_challenge
        session.outstanding_challenge = None
        return challenge

    def mark_verified(self, peer_id: str) -> PeerSession:
        """
        Mark the peer as verified.

        Raises:
            HandshakeError: If no shared key has been derived yet
        """
        session = self._require(peer_id)
        if session.shared_key is None:
            raise HandshakeError(
                ErrorCode.E209_HANDSHAKE_FAILED,
                f"Cannot verify {peer_id} before a shared key exists",
                {"peer_id": peer_id},
            )
        session.is_verified = True
        logger.info(f"Peer {peer_id} verified")
        return session

    def remove(self, peer_id: str) -> Optional[PeerSession]:
        session = self._sessions.pop(peer_id, None)
        if session is not None:
            logger.info(f"Removed peer {peer_id}")
        return session

    def shared_key(self, peer_id: str) -> Optional[bytes]:
        session = self._sessions.get(peer_id)
        return session.shared_key if session else None

    def verified_peers(self) -> List[PeerSession]:
        return [session for session in self._sessions.values() if session.is_verified]
