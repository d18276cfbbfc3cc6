import enum
import logging
import socket
import struct
from typing import NamedTuple

from errors import HandshakeError, NetworkError, ProtocolError, ValidationError

logger = logging.getLogger(__name__)

HANDSHAKE_LEN = 68   # handshake should be exactly 68 bytes
PROTOCOL_STR = b'BitTorrent protocol'

# message ids
CHOKE = 0
UNCHOKE = 1
INTERESTED = 2
NOT_INTERESTED = 3
HAVE = 4
BITFIELD = 5
REQUEST = 6
PIECE = 7
CANCEL = 8


class PeerAddress(NamedTuple):
    ip: str
    port: int

    @classmethod
    def parse(cls, address):
        host, sep, port = address.rpartition(':')
        if not sep or not host:
            raise ValidationError(f"Peer address must look like ip:port, got {address!r}")
        try:
            port_number = int(port)
        except ValueError as e:
            raise ValidationError(f"Invalid port in peer address {address!r}") from e
        if not 0 < port_number < 65536:
            raise ValidationError(f"Port out of range in peer address {address!r}")
        return cls(host, port_number)

    def __str__(self):
        return f"{self.ip}:{self.port}"


class SessionState(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTED = 'connected'
    HANDSHAKEN = 'handshaken'
    READY = 'ready'
    CLOSED = 'closed'


# creates connection with a peer using the given ip and port, returns the socket
def connect_to_peer(ip, port, timeout=5.0):
    try:
        return socket.create_connection((ip, port), timeout=timeout)
    except OSError as e:
        raise NetworkError(f"Error connecting to peer {ip}:{port} - {e}") from e


def build_handshake(info_hash, peer_id):
    # reserved bytes for possible protocol extensions
    reserved = b'\x00' * 8

    # create message, total 68 bytes
    return struct.pack(f'B{len(PROTOCOL_STR)}s8s20s20s',
                       len(PROTOCOL_STR),  # 1 byte
                       PROTOCOL_STR,       # 19 bytes
                       reserved,           # 8 bytes
                       info_hash,          # 20 bytes
                       peer_id)            # 20 bytes


def parse_handshake(data, expected_info_hash):
    """
    Validate a 68 byte handshake, returns the remote peer id.
    """
    # 1 byte   - pstrlen
    # 19 bytes - protocol_str
    # 8 bytes  - reserved
    # 20 bytes - info_hash
    # 20 bytes - peer_id
    pstrlen, protocol_str, _reserved, info_hash, peer_id = struct.unpack('B19s8s20s20s', data)

    if pstrlen != len(PROTOCOL_STR) or protocol_str != PROTOCOL_STR:
        raise HandshakeError(f"Invalid protocol string: {protocol_str!r}")

    if info_hash != expected_info_hash:
        raise HandshakeError(f"Peer answered with info hash {info_hash.hex()}, expected {expected_info_hash.hex()}")

    return peer_id


def receive_exactly(sock, num_bytes):
    """
    Receive exactly num_bytes from socket.
    """
    data = b""
    while len(data) < num_bytes:
        try:
            chunk = sock.recv(num_bytes - len(data))
        except socket.timeout as e:
            raise NetworkError(f"Timed out waiting for {num_bytes - len(data)} more byte(s) from peer") from e
        except OSError as e:
            raise NetworkError(f"Socket error: {e}") from e
        if not chunk:
            raise NetworkError(f"Peer closed the connection after {len(data)} of {num_bytes} byte(s)")
        data += chunk

    return data


def encode_message(msg_id, payload=b''):
    # <length prefix><message id><payload>
    return struct.pack(">IB", len(payload) + 1, msg_id) + payload


def send_message(sock, msg_id, payload=b''):
    try:
        sock.sendall(encode_message(msg_id, payload))
    except OSError as e:
        raise NetworkError(f"Error sending message {msg_id} to peer: {e}") from e


# Receive a complete BitTorrent protocol message.
# Returns: (msg_id, payload) tuple or (None, None) for keep-alive
def receive_message(sock):
    length = struct.unpack(">I", receive_exactly(sock, 4))[0]
    if length == 0:
        # keep-alive message
        return (None, None)

    msg_id = receive_exactly(sock, 1)[0]

    payload = b''
    if length > 1:
        payload = receive_exactly(sock, length - 1)

    return (msg_id, payload)


class PeerSession:
    """
    One TCP connection to one peer.

    Goes DISCONNECTED -> CONNECTED -> HANDSHAKEN -> READY and never back;
    close() may be called from any state, as often as needed.
    """

    def __init__(self, address, info_hash, config):
        if isinstance(address, str):
            address = PeerAddress.parse(address)
        self.address = PeerAddress(*address)
        self.info_hash = info_hash
        self.config = config

        self.state = SessionState.DISCONNECTED
        self.sock = None
        self.remote_peer_id = None
        self.bitfield = None
        self.unchoked = False
        self.have = set()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def __repr__(self):
        return f"PeerSession({self.address}, state={self.state.value})"

    def _expect(self, state, action):
        if self.state is not state:
            raise ProtocolError(f"Cannot {action} while session with {self.address} is {self.state.value}")

    def connect(self):
        self._expect(SessionState.DISCONNECTED, 'connect')
        logger.info(f"Connecting to peer {self.address}")
        self.sock = connect_to_peer(self.address.ip, self.address.port, self.config.connect_timeout)
        self.sock.settimeout(self.config.read_timeout)
        self.state = SessionState.CONNECTED
        return self

    def handshake(self):
        self._expect(SessionState.CONNECTED, 'handshake')
        try:
            self.sock.sendall(build_handshake(self.info_hash, self.config.peer_id))
        except OSError as e:
            raise NetworkError(f"Error sending handshake to {self.address}: {e}") from e

        try:
            data = receive_exactly(self.sock, HANDSHAKE_LEN)
        except NetworkError as e:
            raise HandshakeError(f"Short handshake from {self.address}: {e}") from e

        self.remote_peer_id = parse_handshake(data, self.info_hash)
        self.state = SessionState.HANDSHAKEN
        logger.info(f"Handshake with {self.address} done, remote peer id {self.remote_peer_id.hex()}")
        return self.remote_peer_id

    def _on_have(self, payload):
        if len(payload) == 4:
            self.have.add(struct.unpack(">I", payload)[0])

    def wait_until_ready(self):
        """
        Wait for BITFIELD, send INTERESTED, then wait for UNCHOKE.
        """
        self._expect(SessionState.HANDSHAKEN, 'get ready')

        while self.bitfield is None:
            msg_id, payload = receive_message(self.sock)
            logger.debug(f"Got message {msg_id} from {self.address} while waiting for bitfield")
            if msg_id == BITFIELD:
                self.bitfield = payload
            elif msg_id == HAVE:
                self._on_have(payload)
            elif msg_id == UNCHOKE:
                self.unchoked = True

        send_message(self.sock, INTERESTED)

        while not self.unchoked:
            msg_id, payload = receive_message(self.sock)
            logger.debug(f"Got message {msg_id} from {self.address} while waiting for unchoke")
            if msg_id == UNCHOKE:
                self.unchoked = True
            elif msg_id == HAVE:
                self._on_have(payload)

        self.state = SessionState.READY
        logger.info(f"Peer {self.address} unchoked us")
        return self

    def open(self):
        """Connect, handshake and wait for unchoke in one go."""
        self.connect()
        self.handshake()
        return self.wait_until_ready()

    def request_block(self, index, begin, length):
        self._expect(SessionState.READY, 'request a block')

        # <len=0013><id=6><index><begin><length>
        send_message(self.sock, REQUEST, struct.pack(">III", index, begin, length))
        logger.debug(f"Requested piece {index}, offset {begin}, length {length} from {self.address}")

        while True:
            msg_id, payload = receive_message(self.sock)

            if msg_id == PIECE:
                if len(payload) < 8:
                    raise ProtocolError(f"PIECE message from {self.address} is too short ({len(payload)} bytes)")
                resp_index, resp_begin = struct.unpack(">II", payload[:8])
                block = payload[8:]
                if resp_index != index or resp_begin != begin:
                    raise ProtocolError(
                        f"Peer {self.address} sent piece {resp_index} offset {resp_begin}, "
                        f"but piece {index} offset {begin} was requested")
                if len(block) != length:
                    raise ProtocolError(
                        f"Peer {self.address} sent {len(block)} bytes for a {length} byte block")
                return block

            # anything else is skipped; a stalled peer ends in a read timeout
            if msg_id == CHOKE:
                self.unchoked = False
                logger.debug(f"Peer {self.address} choked us with a request outstanding")
            elif msg_id == UNCHOKE:
                self.unchoked = True
            elif msg_id == HAVE:
                self._on_have(payload)

    def close(self):
        if self.sock is not None:
            try:
                self.sock.close()
            finally:
                self.sock = None
                logger.debug(f"Closed connection to {self.address}")
        self.state = SessionState.CLOSED


def dial(address, info_hash, config):
    return PeerSession(address, info_hash, config).connect()


def handshake(session):
    return session.handshake()


def close(session):
    session.close()
