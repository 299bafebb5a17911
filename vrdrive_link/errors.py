class LinkError(Exception):
    pass

class TransportError(LinkError):
    """Signaling socket could not connect or send."""

class AuthError(LinkError):
    """Login rejected or session invalid."""

class NegotiationError(LinkError):
    """SDP or ICE step failed; the current negotiation is aborted."""

class ChannelError(LinkError):
    """Sub-channel never opened or closed unexpectedly."""

class DecodeError(LinkError):
    """Inbound payload could not be parsed."""
