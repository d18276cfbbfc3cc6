import hashlib
import os
import tempfile
import unittest

from bencode import decode_all, encode
from errors import ParseError, ValidationError
from metainfo import derive_identifier, load_descriptor, parse_descriptor_from_bytes, split_chunk_hashes
from tests.fake_peer import make_torrent

PAYLOAD = bytes(range(256)) * 100   # 25600 bytes
PIECE_LENGTH = 16384


class SplitChunkHashesTest(unittest.TestCase):

    def test_two_hashes(self):
        blob = b'a' * 20 + b'b' * 20
        hashes = split_chunk_hashes(blob)
        self.assertEqual(hashes, [b'a' * 20, b'b' * 20])

    def test_not_multiple_of_20(self):
        with self.assertRaises(ValidationError):
            split_chunk_hashes(b'x' * 41)

    def test_empty(self):
        self.assertEqual(split_chunk_hashes(b''), [])


class DescriptorTest(unittest.TestCase):

    def setUp(self):
        self.raw = make_torrent(PAYLOAD, PIECE_LENGTH)
        self.descriptor = parse_descriptor_from_bytes(self.raw)

    def test_fields(self):
        d = self.descriptor
        self.assertEqual(d.announce_url, 'http://tracker.test/announce')
        self.assertEqual(d.name, 'sample.bin')
        self.assertEqual(d.length, len(PAYLOAD))
        self.assertEqual(d.piece_length, PIECE_LENGTH)
        self.assertEqual(d.num_chunks, 2)

    def test_chunk_hashes(self):
        expected = [hashlib.sha1(PAYLOAD[:PIECE_LENGTH]).digest(),
                    hashlib.sha1(PAYLOAD[PIECE_LENGTH:]).digest()]
        self.assertEqual(list(self.descriptor.chunk_hashes), expected)

    def test_chunk_length(self):
        self.assertEqual(self.descriptor.chunk_length(0), PIECE_LENGTH)
        self.assertEqual(self.descriptor.chunk_length(1), len(PAYLOAD) - PIECE_LENGTH)
        with self.assertRaises(ValidationError):
            self.descriptor.chunk_length(2)
        with self.assertRaises(ValidationError):
            self.descriptor.chunk_length(-1)

    def test_identifier_is_sha1_of_info(self):
        info = decode_all(self.raw)[b'info']
        self.assertEqual(self.descriptor.content_identifier, hashlib.sha1(encode(info)).digest())
        self.assertEqual(len(self.descriptor.content_identifier), 20)
        self.assertEqual(self.descriptor.info_hash_hex, self.descriptor.content_identifier.hex())

    def test_identifier_deterministic(self):
        again = parse_descriptor_from_bytes(self.raw)
        self.assertEqual(derive_identifier(self.descriptor.info), derive_identifier(self.descriptor.info))
        self.assertEqual(again.content_identifier, self.descriptor.content_identifier)

    def test_identifier_changes_with_info(self):
        other = parse_descriptor_from_bytes(make_torrent(PAYLOAD, PIECE_LENGTH, name=b'sample.bim'))
        self.assertNotEqual(other.content_identifier, self.descriptor.content_identifier)

    def test_identifier_ignores_announce(self):
        other = parse_descriptor_from_bytes(make_torrent(PAYLOAD, PIECE_LENGTH, announce=b'http://elsewhere/'))
        self.assertEqual(other.content_identifier, self.descriptor.content_identifier)

    def test_unknown_info_keys_are_hashed(self):
        plain = self.descriptor.content_identifier
        extra = parse_descriptor_from_bytes(make_torrent(PAYLOAD, PIECE_LENGTH, private=1))
        self.assertIn(b'private', extra.info)
        self.assertNotEqual(extra.content_identifier, plain)

    def test_load_descriptor(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'sample.torrent')
            with open(path, 'wb') as f:
                f.write(self.raw)
            self.assertEqual(load_descriptor(path).content_identifier, self.descriptor.content_identifier)


class DescriptorErrorTest(unittest.TestCase):

    def test_not_a_dict(self):
        with self.assertRaises(ValidationError):
            parse_descriptor_from_bytes(b'l4:spame')

    def test_missing_announce(self):
        raw = encode({b'info': {b'name': b'x', b'length': 1, b'piece length': 1, b'pieces': b'a' * 20}})
        with self.assertRaises(ValidationError):
            parse_descriptor_from_bytes(raw)

    def test_info_wrong_type(self):
        with self.assertRaises(ValidationError):
            parse_descriptor_from_bytes(encode({b'announce': b'http://t/', b'info': b'oops'}))

    def test_pieces_not_multiple_of_20(self):
        info = {b'name': b'x', b'length': 1, b'piece length': 1, b'pieces': b'a' * 21}
        with self.assertRaises(ValidationError):
            parse_descriptor_from_bytes(encode({b'announce': b'http://t/', b'info': info}))

    def test_piece_count_mismatch(self):
        info = {b'name': b'x', b'length': 100, b'piece length': 10, b'pieces': b'a' * 20}
        with self.assertRaises(ValidationError):
            parse_descriptor_from_bytes(encode({b'announce': b'http://t/', b'info': info}))

    def test_malformed_bencode(self):
        with self.assertRaises(ParseError):
            parse_descriptor_from_bytes(b'd8:announce')


if __name__ == '__main__':
    unittest.main()
