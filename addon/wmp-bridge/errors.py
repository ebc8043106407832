"""Exception hierarchy for WMP Bridge."""


class WMPError(Exception):
    """Base class for all bridge errors."""


class TransportError(WMPError, ConnectionError):
    """Connect, send or receive failure on a gateway socket."""


class SendTimeout(TransportError):
    """Write did not complete in time; the socket is still usable."""


class ProxyHandshakeError(TransportError):
    """Relay proxy refused or garbled the CONN handshake."""


class ProtocolError(WMPError, ValueError):
    """Inbound line could not be parsed."""


class CommandValidationError(WMPError, ValueError):
    """Command argument rejected before any network traffic."""


class DiscoveryError(WMPError):
    """Discovery or address resolution failed."""
