class TorrentError(Exception):
    """Base class for every error raised by the client."""


class ParseError(TorrentError):
    """Raised when bencoded data is malformed."""


class ValidationError(TorrentError):
    """Raised when data decodes fine but does not make sense (wrong type, bad length)."""


class NetworkError(TorrentError):
    """Raised on connection failures, timeouts and tracker transport errors."""


class HandshakeError(TorrentError):
    """Raised when a peer handshake is short or echoes the wrong info hash."""


class ProtocolError(TorrentError):
    """Raised when a peer sends a message we did not ask for or did not expect."""


class IntegrityError(TorrentError):
    """Raised when an assembled piece does not match its SHA-1 hash."""
