import os
import random
import string
from dataclasses import dataclass, field

from errors import ValidationError

PEER_ID_LEN = 20
PEER_ID_PREFIX = '-PC0001-'   # -<ClientName><Version>-


# generate 20-byte peer id for client (convention is -<ClientName><Version>-<RandomString>)
def generate_peer_id():
    allowed_chars = string.ascii_letters + string.digits
    randomized = ''.join(random.choice(allowed_chars) for _ in range(PEER_ID_LEN - len(PEER_ID_PREFIX)))
    return (PEER_ID_PREFIX + randomized).encode()


def _as_peer_id(value):
    if isinstance(value, str):
        value = value.encode()
    if not isinstance(value, bytes) or len(value) != PEER_ID_LEN:
        raise ValidationError(f"peer id must be exactly {PEER_ID_LEN} bytes, got {value!r}")
    return value


@dataclass
class ClientConfig:
    """
    Settings shared by the tracker client, peer sessions and the downloader.

    max_parallel_peers=1 keeps the single peer, one chunk after another
    behaviour; anything higher gives each peer its own worker thread.
    """
    peer_id: bytes = field(default_factory=generate_peer_id)
    port: int = 6881
    connect_timeout: float = 5.0
    read_timeout: float = 10.0
    tracker_timeout: float = 10.0
    max_parallel_peers: int = 1
    peer_index: int = 0

    def __post_init__(self):
        self.peer_id = _as_peer_id(self.peer_id)
        if self.max_parallel_peers < 1:
            raise ValidationError(f"max_parallel_peers must be at least 1, got {self.max_parallel_peers}")
        if self.peer_index < 0:
            raise ValidationError(f"peer_index must not be negative, got {self.peer_index}")
        if not 0 < self.port < 65536:
            raise ValidationError(f"port out of range: {self.port}")

    @classmethod
    def from_env(cls, environ=None):
        environ = os.environ if environ is None else environ
        kwargs = {}

        if environ.get('TORRENT_PEER_ID'):
            kwargs['peer_id'] = environ['TORRENT_PEER_ID']

        numeric = {
            'TORRENT_PORT': ('port', int),
            'TORRENT_CONNECT_TIMEOUT': ('connect_timeout', float),
            'TORRENT_READ_TIMEOUT': ('read_timeout', float),
            'TORRENT_TRACKER_TIMEOUT': ('tracker_timeout', float),
            'TORRENT_MAX_PARALLEL_PEERS': ('max_parallel_peers', int),
        }
        for env_name, (attr, convert) in numeric.items():
            raw = environ.get(env_name)
            if raw is None or raw == '':
                continue
            try:
                kwargs[attr] = convert(raw)
            except ValueError as e:
                raise ValidationError(f"{env_name} is not a valid number: {raw!r}") from e

        return cls(**kwargs)
