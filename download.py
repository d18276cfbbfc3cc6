import hashlib
import logging
import queue
import threading

from connect_peer import PeerSession
from errors import IntegrityError, ProtocolError, TorrentError, ValidationError

logger = logging.getLogger(__name__)

BLOCK_SIZE = 16384   # 16 KiB, the usual request size


def chunk_length(descriptor, index):
    # every piece is piece_length long except possibly the last one
    return descriptor.chunk_length(index)


def split_blocks(length, block_size=BLOCK_SIZE):
    blocks = []
    for offset in range(0, length, block_size):
        blocks.append((offset, min(block_size, length - offset)))
    return blocks


class ChunkBuffer:
    """
    Holds one piece while its blocks arrive, and remembers which offsets
    have been filled so we only hash a complete piece.
    """

    def __init__(self, index, length):
        self.index = index
        self.length = length
        self.data = bytearray(length)
        self.received = {}   # offset -> block length

    def write(self, offset, block):
        if offset < 0 or offset + len(block) > self.length:
            raise ProtocolError(
                f"Block at offset {offset} ({len(block)} bytes) does not fit piece {self.index} of {self.length} bytes")
        self.data[offset:offset + len(block)] = block
        self.received[offset] = len(block)

    @property
    def bytes_received(self):
        return sum(self.received.values())

    def is_complete(self, blocks):
        return all(self.received.get(offset) == length for offset, length in blocks)

    def verify(self, expected_hash):
        actual_hash = hashlib.sha1(self.data).digest()
        if actual_hash != expected_hash:
            logger.warning(f"Piece {self.index} failed hash check: got {actual_hash.hex()}, expected {expected_hash.hex()}")
            raise IntegrityError(f"Piece {self.index} hash mismatch")
        return bytes(self.data)


def download_chunk(session, descriptor, index, block_size=BLOCK_SIZE):
    """
    Fetch one piece block by block over a ready session and check its hash.
    Blocks are requested one at a time, each waiting for its answer.
    """
    length = chunk_length(descriptor, index)
    blocks = split_blocks(length, block_size)
    buffer = ChunkBuffer(index, length)

    logger.info(f"Downloading piece {index} ({length} bytes, {len(blocks)} blocks) from {session.address}")
    for offset, block_length in blocks:
        block = session.request_block(index, offset, block_length)
        buffer.write(offset, block)

    if not buffer.is_complete(blocks):
        raise ProtocolError(f"Piece {index} is missing data: {buffer.bytes_received} of {length} bytes")

    data = buffer.verify(descriptor.chunk_hashes[index])
    logger.info(f"Piece {index} verified")
    return data


def pick_peer(peers, config):
    if not peers:
        raise ValidationError("No peers available for download")
    if config.peer_index >= len(peers):
        raise ValidationError(f"Peer index {config.peer_index} out of range, tracker returned {len(peers)} peer(s)")
    return peers[config.peer_index]


def download_file(descriptor, peers, config, block_size=BLOCK_SIZE):
    """
    Download every piece and return the whole file.

    With max_parallel_peers == 1 a single session fetches all pieces in order.
    """
    if config.max_parallel_peers == 1:
        peer = pick_peer(peers, config)
        pieces = []
        with PeerSession(peer, descriptor.content_identifier, config) as session:
            session.open()
            for index in range(descriptor.num_chunks):
                pieces.append(download_chunk(session, descriptor, index, block_size))
        return b''.join(pieces)

    return start_download_with_threads(descriptor, peers, config, block_size)


def start_download_with_threads(descriptor, peers, config, block_size=BLOCK_SIZE):
    """
    One worker thread per peer (up to max_parallel_peers), all pulling piece
    indices from a shared queue. Each worker still asks for one block at a time.
    """
    if not peers:
        raise ValidationError("No peers available for download")

    work_queue = queue.Queue()
    for i in range(descriptor.num_chunks):
        work_queue.put(i)

    results = {}
    errors = []
    lock = threading.Lock()

    selected = peers[:config.max_parallel_peers]
    logger.info(f"Spawning {len(selected)} download thread(s)")

    threads = []
    for peer in selected:
        thread = threading.Thread(
            target=download_worker,
            args=(peer, descriptor, config, block_size, work_queue, results, errors, lock),
            name=f"Peer-{peer}",
        )
        threads.append(thread)
        thread.start()

    # Wait for all threads to complete
    for thread in threads:
        thread.join()

    if errors and len(results) < descriptor.num_chunks:
        raise errors[0]

    missing = [i for i in range(descriptor.num_chunks) if i not in results]
    if missing:
        raise ProtocolError(f"Pieces {missing} were not downloaded")

    return b''.join(results[i] for i in range(descriptor.num_chunks))


def download_worker(peer, descriptor, config, block_size, work_queue, results, errors, lock):
    """
    Worker thread function for downloading pieces from queue.
    The first failure stops this worker; its piece is not handed to anyone else.
    """
    try:
        with PeerSession(peer, descriptor.content_identifier, config) as session:
            session.open()
            while True:
                try:
                    index = work_queue.get_nowait()
                except queue.Empty:
                    break

                data = download_chunk(session, descriptor, index, block_size)

                with lock:
                    results[index] = data
    except TorrentError as e:
        logger.error(f"Worker for {peer} stopped: {type(e).__name__}: {e}")
        with lock:
            errors.append(e)
