import argparse
import dataclasses
import json
import logging
import sys

from bencode import decode_all
from config import ClientConfig
from connect_peer import PeerAddress, PeerSession
from download import download_chunk, download_file, pick_peer
from errors import TorrentError, ValidationError
from metainfo import load_descriptor
from tracker import request_peers

logger = logging.getLogger("main")


def save_to_disk(data, file_path):
    with open(file_path, 'wb') as f:
        f.write(data)


def to_jsonable(value):
    # byte strings are shown as text, the way the decode command prints them
    if isinstance(value, bytes):
        return value.decode(errors='replace')
    if isinstance(value, list):
        return [to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {to_jsonable(key): to_jsonable(item) for key, item in value.items()}
    return value


def cmd_decode(args, config):
    value = decode_all(args.value.encode())
    try:
        print(json.dumps(to_jsonable(value)))
    except RecursionError as e:
        raise ValidationError("Value is nested too deeply to print as JSON") from e


def cmd_info(args, config):
    descriptor = load_descriptor(args.torrent)
    print(f"Tracker URL: {descriptor.announce_url}")
    print(f"Length: {descriptor.length}")
    print(f"Info Hash: {descriptor.info_hash_hex}")
    print(f"Piece Length: {descriptor.piece_length}")
    print("Piece Hashes:")
    for piece_hash in descriptor.chunk_hashes:
        print(piece_hash.hex())


def cmd_peers(args, config):
    descriptor = load_descriptor(args.torrent)
    for peer in request_peers(descriptor, config):
        print(peer)


def cmd_handshake(args, config):
    descriptor = load_descriptor(args.torrent)
    with PeerSession(PeerAddress.parse(args.peer), descriptor.content_identifier, config) as session:
        session.connect()
        remote_peer_id = session.handshake()
    print(f"Peer ID: {remote_peer_id.hex()}")


def _peers_for(args, descriptor, config):
    if args.peer:
        return [PeerAddress.parse(args.peer)]
    return request_peers(descriptor, config)


def cmd_download_piece(args, config):
    descriptor = load_descriptor(args.torrent)
    peers = _peers_for(args, descriptor, config)
    with PeerSession(pick_peer(peers, config), descriptor.content_identifier, config) as session:
        session.open()
        data = download_chunk(session, descriptor, args.piece)

    save_to_disk(data, args.output)
    print(f"Piece {args.piece} downloaded to {args.output}.")


def cmd_download(args, config):
    descriptor = load_descriptor(args.torrent)
    peers = _peers_for(args, descriptor, config)
    data = download_file(descriptor, peers, config)
    save_to_disk(data, args.output)
    print(f"Downloaded {args.torrent} to {args.output}.")


def build_parser():
    parser = argparse.ArgumentParser(description="Minimal BitTorrent client")
    parser.add_argument('-v', '--verbose', action='store_true', help="Debug logging")
    parser.add_argument('--port', type=int, help="Port announced to the tracker")
    parser.add_argument('--peer-index', type=int, help="Which tracker peer to download from")
    parser.add_argument('--max-parallel-peers', type=int, help="Peers used by 'download' (default 1)")
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('decode', help="Decode a bencoded value and print it as JSON")
    p.add_argument('value')
    p.set_defaults(func=cmd_decode)

    p = sub.add_parser('info', help="Show torrent metadata")
    p.add_argument('torrent')
    p.set_defaults(func=cmd_info)

    p = sub.add_parser('peers', help="Ask the tracker for peers")
    p.add_argument('torrent')
    p.set_defaults(func=cmd_peers)

    p = sub.add_parser('handshake', help="Handshake with one peer and print its id")
    p.add_argument('torrent')
    p.add_argument('peer', help="ip:port")
    p.set_defaults(func=cmd_handshake)

    p = sub.add_parser('download_piece', help="Download and verify one piece")
    p.add_argument('-o', '--output', required=True)
    p.add_argument('--peer', help="ip:port, skips the tracker")
    p.add_argument('torrent')
    p.add_argument('piece', type=int)
    p.set_defaults(func=cmd_download_piece)

    p = sub.add_parser('download', help="Download the whole file")
    p.add_argument('-o', '--output', required=True)
    p.add_argument('--peer', help="ip:port, skips the tracker")
    p.add_argument('torrent')
    p.set_defaults(func=cmd_download)

    return parser


def build_config(args):
    overrides = {
        "port": args.port,
        "peer_index": args.peer_index,
        "max_parallel_peers": args.max_parallel_peers,
    }
    config = ClientConfig.from_env()
    return dataclasses.replace(config, **{k: v for k, v in overrides.items() if v is not None})


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)-7s] %(message)s',
        stream=sys.stderr,
    )

    try:
        args.func(args, build_config(args))
    except TorrentError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except OSError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
