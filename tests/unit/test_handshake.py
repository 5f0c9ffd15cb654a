"""
Unit tests for dropshare.handshake module.

Created by orpheus497

Drives two Handshake instances against each other through the wire
codec, without any transport.
"""

from collections import deque

import pytest

from dropshare import crypto
from dropshare.connection_fsm import ConnectionEvent
from dropshare.crypto import KeyPair
from dropshare.errors import HandshakeError
from dropshare.handshake import Handshake
from dropshare.protocol import (
    Challenge,
    ChallengeResponse,
    FilesUpdate,
    MessageType,
    Protocol,
    VerificationComplete,
)
from dropshare.registry import PeerRegistry

CONNECTOR = "connector"
ACCEPTOR = "acceptor"


class Wire:
    """Two handshakes exchanging encoded messages through a FIFO."""

    def __init__(self, mutual=False, connector_signing=None):
        self.queue = deque()
        self.trace = []
        self.events = {CONNECTOR: [], ACCEPTOR: []}
        self.errors = []

        self.sides = {}
        for side in (CONNECTOR, ACCEPTOR):
            signing = crypto.generate_signing_pair()
            if side == CONNECTOR and connector_signing is not None:
                signing = connector_signing
            self.sides[side] = Handshake(
                PeerRegistry(),
                crypto.generate_key_agreement_pair(),
                signing,
                send=self._sender(side),
                on_status=self._status(side),
                mutual_authentication=mutual,
            )

    def _sender(self, side):
        def send(peer_id, message):
            self.queue.append((side, peer_id, Protocol.pack_message(message)))

        return send

    def _status(self, side):
        def on_status(peer_id, event, error_msg):
            self.events[side].append(event)

        return on_status

    @property
    def connector(self) -> Handshake:
        return self.sides[CONNECTOR]

    @property
    def acceptor(self) -> Handshake:
        return self.sides[ACCEPTOR]

    def step(self):
        """Deliver the oldest message in flight."""
        source, destination, data = self.queue.popleft()
        message = Protocol.unpack_message(data)
        self.trace.append((source, message.TYPE))
        try:
            assert self.sides[destination].handle_message(source, message)
        except HandshakeError as e:
            self.errors.append((destination, e))

    def pump(self):
        while self.queue:
            self.step()

    def run(self):
        self.connector.start(ACCEPTOR, "Calm-Fox")
        self.pump()


class TestAsymmetricHandshake:
    """Default mode: the acceptor authenticates the connector."""

    def test_message_sequence(self):
        wire = Wire()
        wire.run()

        assert wire.trace == [
            (CONNECTOR, MessageType.HELLO),
            (ACCEPTOR, MessageType.KEY_EXCHANGE),
            (CONNECTOR, MessageType.KEY_EXCHANGE_REPLY),
            (ACCEPTOR, MessageType.CHALLENGE),
            (CONNECTOR, MessageType.CHALLENGE_RESPONSE),
            (ACCEPTOR, MessageType.VERIFICATION_COMPLETE),
        ]
        assert wire.errors == []

    def test_both_sides_report_connected(self):
        wire = Wire()
        wire.run()

        for side in (CONNECTOR, ACCEPTOR):
            assert wire.events[side] == [
                ConnectionEvent.CHANNEL_OPENED,
                ConnectionEvent.VERIFICATION_SUCCEEDED,
            ]

    def test_shared_keys_match(self):
        wire = Wire()
        wire.run()

        connector_key = wire.connector.registry.shared_key(ACCEPTOR)
        acceptor_key = wire.acceptor.registry.shared_key(CONNECTOR)
        assert connector_key is not None
        assert connector_key == acceptor_key

    def test_only_connector_is_verified(self):
        wire = Wire()
        wire.run()

        assert wire.acceptor.registry.get(CONNECTOR).is_verified is True
        assert wire.acceptor.registry.get(CONNECTOR).name == "Calm-Fox"
        assert wire.connector.registry.get(ACCEPTOR).is_verified is False
        assert wire.connector.registry.get(ACCEPTOR).remote_confirmed is True

    def test_challenge_is_consumed(self):
        wire = Wire()
        wire.run()
        assert wire.acceptor.registry.get(CONNECTOR).outstanding_challenge is None

    def test_wrong_signing_key_fails(self):
        announced = crypto.generate_signing_pair()
        actual = crypto.generate_signing_pair()
        impostor = KeyPair(private_key=actual.private_key, public_key=announced.public_key)

        wire = Wire(connector_signing=impostor)
        wire.run()

        assert len(wire.errors) == 1
        assert wire.errors[0][0] == ACCEPTOR
        assert (ACCEPTOR, MessageType.VERIFICATION_COMPLETE) not in wire.trace
        assert ConnectionEvent.VERIFICATION_SUCCEEDED not in wire.events[ACCEPTOR]
        assert ConnectionEvent.VERIFICATION_SUCCEEDED not in wire.events[CONNECTOR]
        assert wire.acceptor.registry.get(CONNECTOR).is_verified is False

    def test_replayed_response_is_ignored(self):
        wire = Wire()
        wire.run()

        # A second response after the challenge was consumed changes nothing
        challenge = crypto.generate_challenge()
        signature = crypto.sign(challenge, wire.connector.signing_keys.private_key)
        assert wire.acceptor.handle_message(CONNECTOR, ChallengeResponse(signature=signature))
        assert wire.queue == deque()
        assert wire.acceptor.registry.get(CONNECTOR).is_verified is True


class TestMutualHandshake:
    """Mutual mode: each side authenticates the other."""

    def test_both_sides_verified(self):
        wire = Wire(mutual=True)
        wire.run()

        assert wire.errors == []
        assert wire.acceptor.registry.get(CONNECTOR).is_verified is True
        assert wire.connector.registry.get(ACCEPTOR).is_verified is True

    def test_connected_reported_once_per_side(self):
        wire = Wire(mutual=True)
        wire.run()

        for side in (CONNECTOR, ACCEPTOR):
            assert wire.events[side].count(ConnectionEvent.VERIFICATION_SUCCEEDED) == 1

    def test_each_side_challenges(self):
        wire = Wire(mutual=True)
        wire.run()

        challenges = [source for source, kind in wire.trace if kind == MessageType.CHALLENGE]
        completions = [
            source for source, kind in wire.trace if kind == MessageType.VERIFICATION_COMPLETE
        ]
        assert sorted(challenges) == [ACCEPTOR, CONNECTOR]
        assert sorted(completions) == [ACCEPTOR, CONNECTOR]

    def test_impostor_acceptor_is_caught(self):
        wire = Wire(mutual=True)
        announced = crypto.generate_signing_pair()
        wire.acceptor.signing_keys = KeyPair(
            private_key=crypto.generate_signing_pair().private_key,
            public_key=announced.public_key,
        )
        wire.run()

        assert [side for side, _ in wire.errors] == [CONNECTOR]
        assert ConnectionEvent.VERIFICATION_SUCCEEDED not in wire.events[CONNECTOR]


class TestOutOfOrderMessages:
    """Test messages that arrive at the wrong time."""

    def test_unsolicited_response_is_ignored(self):
        wire = Wire()
        wire.acceptor.registry.register(CONNECTOR)

        assert wire.acceptor.handle_message(CONNECTOR, ChallengeResponse(signature=b"\x01" * 64))
        assert wire.queue == deque()
        assert wire.events[ACCEPTOR] == []

    def test_early_verification_complete_is_ignored(self):
        wire = Wire()
        assert wire.connector.handle_message(ACCEPTOR, VerificationComplete())
        assert wire.events[CONNECTOR] == []

    def test_challenge_from_unknown_peer(self):
        wire = Wire()
        with pytest.raises(HandshakeError):
            wire.connector.handle_message(ACCEPTOR, Challenge(challenge=bytes(32)))

    def test_challenge_of_wrong_size(self):
        wire = Wire()
        wire.connector.registry.register(ACCEPTOR)
        with pytest.raises(HandshakeError):
            wire.connector.handle_message(ACCEPTOR, Challenge(challenge=b"short"))

    def test_repeated_hello_sends_keys_once(self):
        wire = Wire()
        wire.connector.start(ACCEPTOR, "Calm-Fox")
        wire.connector.start(ACCEPTOR, "Calm-Fox")
        wire.pump()

        key_offers = [kind for _, kind in wire.trace if kind == MessageType.KEY_EXCHANGE]
        assert key_offers == [MessageType.KEY_EXCHANGE]
        assert wire.errors == []

    def test_non_handshake_message_is_not_consumed(self):
        wire = Wire()
        assert wire.acceptor.handle_message(CONNECTOR, FilesUpdate()) is False

    def test_verification_complete_before_response(self):
        wire = Wire()
        wire.connector.start(ACCEPTOR, "Calm-Fox")
        for _ in range(3):  # HELLO, KEY_EXCHANGE, KEY_EXCHANGE_REPLY
            wire.step()
        assert wire.acceptor.registry.get(CONNECTOR).outstanding_challenge is not None

        assert wire.acceptor.handle_message(CONNECTOR, VerificationComplete())
        assert wire.connector.handle_message(ACCEPTOR, VerificationComplete())

        assert ConnectionEvent.VERIFICATION_SUCCEEDED not in wire.events[ACCEPTOR]
        assert ConnectionEvent.VERIFICATION_SUCCEEDED not in wire.events[CONNECTOR]
        assert wire.connector.registry.get(ACCEPTOR).remote_confirmed is False

        wire.pump()

        assert wire.errors == []
        for side in (CONNECTOR, ACCEPTOR):
            assert wire.events[side].count(ConnectionEvent.VERIFICATION_SUCCEEDED) == 1

    def test_challenger_still_needs_valid_response(self):
        wire = Wire()
        wire.connector.start(ACCEPTOR, "Calm-Fox")
        for _ in range(3):
            wire.step()
        wire.queue.clear()

        wire.acceptor.handle_message(CONNECTOR, Challenge(challenge=crypto.generate_challenge()))
        wire.acceptor.handle_message(CONNECTOR, VerificationComplete())

        session = wire.acceptor.registry.get(CONNECTOR)
        assert session.challenge_answered is True
        assert session.remote_confirmed is True
        assert session.is_verified is False
        assert ConnectionEvent.VERIFICATION_SUCCEEDED not in wire.events[ACCEPTOR]
