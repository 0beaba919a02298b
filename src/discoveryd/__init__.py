"""discoveryd: republish mDNS / DNS-SD services over HTTP."""

__version__ = '0.1.0'
