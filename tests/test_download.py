import hashlib
import unittest

from config import ClientConfig
from connect_peer import PeerAddress, PeerSession
from download import BLOCK_SIZE, ChunkBuffer, download_chunk, download_file, split_blocks
from errors import IntegrityError, NetworkError, ProtocolError, ValidationError
from metainfo import parse_descriptor_from_bytes
from tests.fake_peer import FakePeer, make_torrent

PEER_ID = b'-PC0001-222222222222'


def sample_payload(size):
    return bytes((i * 7 + 3) % 251 for i in range(size))


class SplitBlocksTest(unittest.TestCase):

    def test_exact(self):
        self.assertEqual(split_blocks(32768), [(0, 16384), (16384, 16384)])

    def test_remainder(self):
        self.assertEqual(split_blocks(20000), [(0, 16384), (16384, 3616)])

    def test_small(self):
        self.assertEqual(split_blocks(10), [(0, 10)])


class ChunkBufferTest(unittest.TestCase):

    def test_complete_and_verify(self):
        data = b'abcdef'
        buffer = ChunkBuffer(0, 6)
        blocks = split_blocks(6, 4)
        buffer.write(4, data[4:])
        self.assertFalse(buffer.is_complete(blocks))
        buffer.write(0, data[:4])
        self.assertTrue(buffer.is_complete(blocks))
        self.assertEqual(buffer.bytes_received, 6)
        self.assertEqual(buffer.verify(hashlib.sha1(data).digest()), data)

    def test_verify_mismatch(self):
        buffer = ChunkBuffer(3, 4)
        buffer.write(0, b'abcd')
        with self.assertRaises(IntegrityError):
            buffer.verify(hashlib.sha1(b'abce').digest())

    def test_block_out_of_range(self):
        buffer = ChunkBuffer(0, 4)
        with self.assertRaises(ProtocolError):
            buffer.write(2, b'xyz')


class DownloadChunkTest(unittest.TestCase):

    def setUp(self):
        self.config = ClientConfig(peer_id=PEER_ID, connect_timeout=2.0, read_timeout=2.0)

    def open_session(self, peer, descriptor):
        return PeerSession(PeerAddress(*peer.address), descriptor.content_identifier, self.config).open()

    def test_two_block_chunk(self):
        payload = sample_payload(32768)
        descriptor = parse_descriptor_from_bytes(make_torrent(payload, 32768))
        with FakePeer(payload, 32768, descriptor.content_identifier) as peer:
            with self.open_session(peer, descriptor) as session:
                data = download_chunk(session, descriptor, 0)
            self.assertEqual(len(data), 32768)
            self.assertEqual(hashlib.sha1(data).digest(), descriptor.chunk_hashes[0])
            self.assertEqual(data, payload)
            self.assertEqual(peer.requests, [(0, 0, BLOCK_SIZE), (0, BLOCK_SIZE, BLOCK_SIZE)])

    def test_corrupted_byte(self):
        payload = sample_payload(32768)
        descriptor = parse_descriptor_from_bytes(make_torrent(payload, 32768))
        with FakePeer(payload, 32768, descriptor.content_identifier, corrupt_offset=20000) as peer:
            with self.open_session(peer, descriptor) as session:
                with self.assertRaises(IntegrityError):
                    download_chunk(session, descriptor, 0)
            # no retry: each block was asked for exactly once
            self.assertEqual(len(peer.requests), 2)

    def test_last_chunk_is_shorter(self):
        payload = sample_payload(40000)
        descriptor = parse_descriptor_from_bytes(make_torrent(payload, 32768))
        with FakePeer(payload, 32768, descriptor.content_identifier) as peer:
            with self.open_session(peer, descriptor) as session:
                data = download_chunk(session, descriptor, 1)
            self.assertEqual(data, payload[32768:])
            self.assertEqual(peer.requests, [(1, 0, 40000 - 32768)])

    def test_index_out_of_range(self):
        payload = sample_payload(100)
        descriptor = parse_descriptor_from_bytes(make_torrent(payload, 100))
        with FakePeer(payload, 100, descriptor.content_identifier) as peer:
            with self.open_session(peer, descriptor) as session:
                with self.assertRaises(ValidationError):
                    download_chunk(session, descriptor, 1)
            self.assertEqual(peer.requests, [])


class DownloadFileTest(unittest.TestCase):

    def test_single_peer_sequential(self):
        payload = sample_payload(3 * 20000 + 123)
        descriptor = parse_descriptor_from_bytes(make_torrent(payload, 20000))
        config = ClientConfig(peer_id=PEER_ID, connect_timeout=2.0, read_timeout=2.0)
        with FakePeer(payload, 20000, descriptor.content_identifier) as peer:
            data = download_file(descriptor, [PeerAddress(*peer.address)], config)
            self.assertEqual(data, payload)
            # one connection served every piece, in order
            self.assertEqual(peer.connections, 1)
            self.assertEqual([index for index, _, _ in peer.requests], [0, 0, 1, 1, 2, 2, 3])

    def test_peer_index_selects_peer(self):
        payload = sample_payload(5000)
        descriptor = parse_descriptor_from_bytes(make_torrent(payload, 4096))
        config = ClientConfig(peer_id=PEER_ID, connect_timeout=2.0, read_timeout=2.0, peer_index=1)
        with FakePeer(payload, 4096, descriptor.content_identifier) as first, \
                FakePeer(payload, 4096, descriptor.content_identifier) as second:
            data = download_file(descriptor, [PeerAddress(*first.address), PeerAddress(*second.address)], config)
            self.assertEqual(data, payload)
            self.assertEqual(first.connections, 0)
            self.assertEqual(second.connections, 1)

    def test_no_peers(self):
        descriptor = parse_descriptor_from_bytes(make_torrent(b'x' * 10, 10))
        with self.assertRaises(ValidationError):
            download_file(descriptor, [], ClientConfig(peer_id=PEER_ID))

    def test_peer_index_out_of_range(self):
        descriptor = parse_descriptor_from_bytes(make_torrent(b'x' * 10, 10))
        config = ClientConfig(peer_id=PEER_ID, peer_index=3)
        with self.assertRaises(ValidationError):
            download_file(descriptor, [PeerAddress('127.0.0.1', 1)], config)

    def test_failure_propagates(self):
        payload = sample_payload(30000)
        descriptor = parse_descriptor_from_bytes(make_torrent(payload, 10000))
        config = ClientConfig(peer_id=PEER_ID, connect_timeout=2.0, read_timeout=2.0)
        with FakePeer(payload, 10000, descriptor.content_identifier, corrupt_offset=15000) as peer:
            with self.assertRaises(IntegrityError):
                download_file(descriptor, [PeerAddress(*peer.address)], config)
            # stopped at piece 1, nothing after it was requested
            self.assertEqual([index for index, _, _ in peer.requests], [0, 1])

    def test_parallel_peers(self):
        payload = sample_payload(8 * 4096)
        descriptor = parse_descriptor_from_bytes(make_torrent(payload, 4096))
        config = ClientConfig(peer_id=PEER_ID, connect_timeout=2.0, read_timeout=2.0, max_parallel_peers=2)
        with FakePeer(payload, 4096, descriptor.content_identifier) as first, \
                FakePeer(payload, 4096, descriptor.content_identifier) as second:
            data = download_file(descriptor, [PeerAddress(*first.address), PeerAddress(*second.address)], config)
            self.assertEqual(data, payload)
            served = sorted(index for index, _, _ in first.requests + second.requests)
            self.assertEqual(served, list(range(8)))

    def test_parallel_peers_error(self):
        payload = sample_payload(4 * 4096)
        descriptor = parse_descriptor_from_bytes(make_torrent(payload, 4096))
        config = ClientConfig(peer_id=PEER_ID, connect_timeout=2.0, read_timeout=2.0, max_parallel_peers=2)
        with FakePeer(payload, 4096, descriptor.content_identifier, close_on_request=True) as first, \
                FakePeer(payload, 4096, descriptor.content_identifier, close_on_request=True) as second:
            with self.assertRaises(NetworkError):
                download_file(descriptor, [PeerAddress(*first.address), PeerAddress(*second.address)], config)


if __name__ == '__main__':
    unittest.main()
