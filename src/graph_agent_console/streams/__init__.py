from graph_agent_console.streams.channel_manager import ChannelListener, ChannelState, OutputChannelManager
from graph_agent_console.streams.events import ErrorEvent, ExitEvent, OutputEvent, parse_frame
from graph_agent_console.streams.reconnect import ReconnectPolicy
from graph_agent_console.streams.ring_buffer import MAX_BUFFER_LINES, BoundedRingBuffer
from graph_agent_console.streams.transport import Connection, Connector, websocket_connector

__all__ = [
    "BoundedRingBuffer",
    "ChannelListener",
    "ChannelState",
    "Connection",
    "Connector",
    "ErrorEvent",
    "ExitEvent",
    "MAX_BUFFER_LINES",
    "OutputChannelManager",
    "OutputEvent",
    "ReconnectPolicy",
    "parse_frame",
    "websocket_connector",
]
