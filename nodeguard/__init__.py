"""Connection, device and speed limiting, traffic accounting and sniffing for proxy nodes."""

__version__ = "0.1.0"