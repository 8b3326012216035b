# Protocol package: message model, framing codec and host-side channels.

from workspace_kernel.protocol.channel import Channel, PipeChannel, SocketChannel
from workspace_kernel.protocol.framing import (
    FrameCodec,
    FrameTooLargeError,
    InvalidSignatureError,
    MissingSignatureError,
)
from workspace_kernel.protocol.messages import PROTOCOL_VERSION, Message, ProtocolError

__all__ = [
    "PROTOCOL_VERSION",
    "Channel",
    "FrameCodec",
    "FrameTooLargeError",
    "InvalidSignatureError",
    "Message",
    "MissingSignatureError",
    "PipeChannel",
    "ProtocolError",
    "SocketChannel",
]
