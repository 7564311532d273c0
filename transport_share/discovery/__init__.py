"""mDNS/Zeroconf discovery of transport-share devices."""

from .mdns import DiscoveredPeer, DiscoveryManager, ServiceAnnouncer, ServiceBrowser

__all__ = ["DiscoveredPeer", "DiscoveryManager", "ServiceAnnouncer", "ServiceBrowser"]
