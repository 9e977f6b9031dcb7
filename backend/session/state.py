"""
Live session lifecycle state.

    DISCONNECTED -> CONNECTING -> CONNECTED <-> MUTED
                                      |            |
                                      +-> CLOSING <+ -> DISCONNECTED

This is pure data owned by SessionController.
"""
from enum import Enum


class SessionState(str, Enum):
    """
    Lifecycle status of the live voice session.

    MUTED is a CONNECTED session whose capture drops every frame;
    transport and playback keep running.
    """
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    MUTED = "MUTED"
    CLOSING = "CLOSING"
