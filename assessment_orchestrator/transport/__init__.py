"""Job status transports: realtime socket, status polling, and their coordinator."""

from assessment_orchestrator.transport.coordinator import TransportCoordinator
from assessment_orchestrator.transport.polling import PollingLoop
from assessment_orchestrator.transport.socket_channel import (
    ChannelState,
    SocketChannel,
    SubscriptionHandle,
)

__all__ = [
    "ChannelState",
    "PollingLoop",
    "SocketChannel",
    "SubscriptionHandle",
    "TransportCoordinator",
]
