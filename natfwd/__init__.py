"""natfwd: NAT-PMP port forwarding over HTTP.

An async NAT-PMP (RFC 6886) client and a small aiohttp service that asks the
configured gateway for port mappings on behalf of HTTP callers.
"""

__version__ = "0.1.0"
