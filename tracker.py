import logging
import socket
from typing import List, NamedTuple, Optional

import requests

from bencode import decode_all
from connect_peer import PeerAddress
from errors import NetworkError, ValidationError

logger = logging.getLogger(__name__)

# parser reads .torrent file and extracts announce_url and info_hash
# the tracker answers an HTTP GET with a bencoded dictionary
# parse_peers turns the compact "peers" string into (ip, port) pairs

COMPACT_PEER_LEN = 6   # 4 bytes ip + 2 bytes port


class TrackerResponse(NamedTuple):
    interval: Optional[int]
    peers: List[PeerAddress]


# parameters required by the BitTorrent specification
def build_announce_params(info_hash, peer_id, port=6881, uploaded=0, downloaded=0, left=0, compact=1):
    # info_hash and peer_id stay raw bytes; requests percent-encodes them byte by byte
    return {'info_hash': info_hash,
            'peer_id': peer_id,
            'port': port,
            'uploaded': uploaded,
            'downloaded': downloaded,
            'left': left,          # how much is left to download
            'compact': compact,    # tells tracker to send compact binary format
            }


# parse compact binary response into PeerAddress tuples
# bytes 1-4 are the IP address, bytes 5-6 are port (big-endian)
def parse_peers(binary_peers):
    if not isinstance(binary_peers, bytes):
        raise ValidationError(f"'peers' must be a byte string, got {type(binary_peers).__name__}")
    if len(binary_peers) % COMPACT_PEER_LEN != 0:
        raise ValidationError(f"'peers' length {len(binary_peers)} is not a multiple of {COMPACT_PEER_LEN}")

    peers_list = []
    for index in range(0, len(binary_peers), COMPACT_PEER_LEN):
        entry = binary_peers[index:index + COMPACT_PEER_LEN]
        ip_string = socket.inet_ntoa(entry[:4])
        port_number = int.from_bytes(entry[4:6], 'big')
        peers_list.append(PeerAddress(ip_string, port_number))

    return peers_list


def parse_tracker_response(body):
    decoded_resp = decode_all(body)
    if not isinstance(decoded_resp, dict):
        raise ValidationError("tracker response is not a dictionary")

    if b'failure reason' in decoded_resp:
        reason = decoded_resp[b'failure reason']
        if isinstance(reason, bytes):
            reason = reason.decode(errors='replace')
        raise NetworkError(f"Tracker refused the announce: {reason}")

    if b'peers' not in decoded_resp:
        raise ValidationError("tracker response has no 'peers' field")

    interval = decoded_resp.get(b'interval')
    if interval is not None and not isinstance(interval, int):
        raise ValidationError("'interval' in tracker response is not an integer")

    return TrackerResponse(interval, parse_peers(decoded_resp[b'peers']))


class TrackerClient:
    """
    Talks to the HTTP tracker named in a torrent's announce URL.

    http is anything with requests' get(url, params=..., timeout=...)
    signature; a requests.Session is created when none is given, and
    close() only closes a session the client created itself.
    """

    def __init__(self, descriptor, config, http=None):
        self.descriptor = descriptor
        self.config = config
        self.owns_http = http is None
        self.http = requests.Session() if http is None else http

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        if self.owns_http and self.http is not None:
            self.http.close()
        self.http = None

    def announce(self, uploaded=0, downloaded=0, left=None, compact=1):
        if self.http is None:
            raise NetworkError("Tracker client is closed")
        if left is None:
            left = self.descriptor.length

        params = build_announce_params(self.descriptor.content_identifier, self.config.peer_id,
                                       self.config.port, uploaded, downloaded, left, compact)
        url = self.descriptor.announce_url
        logger.info(f"Announcing to tracker {url}")

        try:
            response = self.http.get(url, params=params, timeout=self.config.tracker_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NetworkError(f"Tracker request to {url} failed: {e}") from e

        result = parse_tracker_response(response.content)
        logger.info(f"Tracker returned {len(result.peers)} peer(s), interval {result.interval}")
        return result

    def request_peers(self, uploaded=0, downloaded=0, left=None, compact=1):
        return self.announce(uploaded, downloaded, left, compact).peers


def request_peers(descriptor, config, http=None):
    with TrackerClient(descriptor, config, http) as client:
        return client.request_peers()
