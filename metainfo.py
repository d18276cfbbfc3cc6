import hashlib
import logging

from bencode import decode_all, encode
from errors import ValidationError

logger = logging.getLogger(__name__)

HASH_LEN = 20   # SHA-1 digest size, one per piece


def derive_identifier(info):
    """
    SHA-1 over the bencoded info dictionary.
    Takes the decoded sub-value itself so keys we do not know about still
    take part in the hash.
    """
    if not isinstance(info, dict):
        raise ValidationError("info must be a dictionary")
    return hashlib.sha1(encode(info)).digest()


def split_chunk_hashes(pieces):
    if len(pieces) % HASH_LEN != 0:
        raise ValidationError(f"pieces length {len(pieces)} is not a multiple of {HASH_LEN}")
    return [bytes(pieces[i:i + HASH_LEN]) for i in range(0, len(pieces), HASH_LEN)]


def _require(dictionary, key, kind, where):
    if key not in dictionary:
        raise ValidationError(f"Missing {key.decode()!r} in {where}")
    value = dictionary[key]
    # bool never shows up from the decoder, but guard int checks anyway
    if not isinstance(value, kind) or isinstance(value, bool):
        raise ValidationError(f"{key.decode()!r} in {where} has the wrong type ({type(value).__name__})")
    return value


class ContentDescriptor:
    """
    Parsed .torrent file (single-file layout).

    announce_url       -- tracker endpoint
    info               -- the decoded info dictionary, untouched
    content_identifier -- 20 byte info hash, computed once
    chunk_hashes       -- one 20 byte SHA-1 per piece, in piece order
    """

    def __init__(self, announce_url, info):
        self.announce_url = announce_url
        self.info = info

        self.name = _require(info, b'name', bytes, 'info').decode(errors='replace')
        self.length = _require(info, b'length', int, 'info')
        self.piece_length = _require(info, b'piece length', int, 'info')
        self.pieces = _require(info, b'pieces', bytes, 'info')

        if self.length <= 0:
            raise ValidationError(f"length must be positive, got {self.length}")
        if self.piece_length <= 0:
            raise ValidationError(f"piece length must be positive, got {self.piece_length}")

        self._chunk_hashes = tuple(split_chunk_hashes(self.pieces))
        expected = -(-self.length // self.piece_length)
        if len(self._chunk_hashes) != expected:
            raise ValidationError(
                f"{len(self._chunk_hashes)} piece hashes for {self.length} bytes "
                f"in pieces of {self.piece_length} (expected {expected})")

        self._content_identifier = derive_identifier(info)

    @property
    def content_identifier(self):
        return self._content_identifier

    @property
    def chunk_hashes(self):
        return self._chunk_hashes

    @property
    def num_chunks(self):
        return len(self._chunk_hashes)

    @property
    def info_hash_hex(self):
        return self._content_identifier.hex()

    def chunk_length(self, index):
        if not 0 <= index < self.num_chunks:
            raise ValidationError(f"piece index {index} out of range (0..{self.num_chunks - 1})")
        if index == self.num_chunks - 1:
            return self.length - self.piece_length * (self.num_chunks - 1)
        return self.piece_length

    def __repr__(self):
        return (f"ContentDescriptor(name={self.name!r}, length={self.length}, "
                f"piece_length={self.piece_length}, info_hash={self.info_hash_hex})")


def parse_descriptor_from_bytes(raw_data):
    data = decode_all(raw_data)
    if not isinstance(data, dict):
        raise ValidationError("torrent file must hold a dictionary at the top level")

    announce = _require(data, b'announce', bytes, 'torrent')
    info = _require(data, b'info', dict, 'torrent')

    descriptor = ContentDescriptor(announce.decode(errors='replace'), info)
    logger.debug(f"Parsed torrent {descriptor.name!r}: {descriptor.num_chunks} pieces, info hash {descriptor.info_hash_hex}")
    return descriptor


def load_descriptor(torrent_file):
    with open(torrent_file, "rb") as f:
        raw_data = f.read()
    return parse_descriptor_from_bytes(raw_data)
