#!/usr/bin/env python3
"""
Transport Contract

The radio stack sits behind Transport. Outbound calls go through its methods;
inbound events are published on pypubsub topics and picked up by the
controller:

    meatnet.link.advertising   (link_id, data, rssi, is_connectable)
    meatnet.link.frame         (link_id, data)
    meatnet.link.status        (link_id, data)
    meatnet.link.connected     (link_id)
    meatnet.link.disconnected  (link_id)
    meatnet.link.device_info   (link_id, firmware, hardware, model)

link_id is an opaque string naming one radio peer (a probe or a node).
status carries the raw status notification of a directly connected probe.
device_info carries the Device Information Service strings read on connect;
any of them may be None.
"""

from pubsub import pub


TOPIC_ADVERTISING = "meatnet.link.advertising"
TOPIC_FRAME = "meatnet.link.frame"
TOPIC_STATUS = "meatnet.link.status"
TOPIC_CONNECTED = "meatnet.link.connected"
TOPIC_DISCONNECTED = "meatnet.link.disconnected"
TOPIC_DEVICE_INFO = "meatnet.link.device_info"

LINK_TOPICS = (
    TOPIC_ADVERTISING,
    TOPIC_FRAME,
    TOPIC_STATUS,
    TOPIC_CONNECTED,
    TOPIC_DISCONNECTED,
    TOPIC_DEVICE_INFO,
)


class Transport:
    """Outbound half of the radio stack."""

    def connect(self, link_id: str) -> bool:
        """Start connecting; completion is reported on TOPIC_CONNECTED."""
        raise NotImplementedError

    def disconnect(self, link_id: str):
        raise NotImplementedError

    def send(self, link_id: str, data: bytes) -> bool:
        """Queue bytes for a connected link. Returns False if the link is down."""
        raise NotImplementedError

    def start(self):
        pass

    def stop(self):
        pass


# -----------------------------------------------------------------------------
# Publishing helpers for transport implementations
# -----------------------------------------------------------------------------

def publish_advertising(link_id: str, data: bytes, rssi: int, is_connectable: bool):
    pub.sendMessage(TOPIC_ADVERTISING, link_id=link_id, data=data, rssi=rssi, is_connectable=is_connectable)


def publish_frame(link_id: str, data: bytes):
    pub.sendMessage(TOPIC_FRAME, link_id=link_id, data=data)


def publish_status(link_id: str, data: bytes):
    pub.sendMessage(TOPIC_STATUS, link_id=link_id, data=data)


def publish_connected(link_id: str):
    pub.sendMessage(TOPIC_CONNECTED, link_id=link_id)


def publish_disconnected(link_id: str):
    pub.sendMessage(TOPIC_DISCONNECTED, link_id=link_id)


def publish_device_info(link_id: str, firmware=None, hardware=None, model=None):
    pub.sendMessage(TOPIC_DEVICE_INFO, link_id=link_id, firmware=firmware, hardware=hardware, model=model)
