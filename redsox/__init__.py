"""SOCKS4, SOCKS5, Shadowsocks and DNS-over-TCP building blocks for a transparent proxy redirector."""

__version__ = "0.7.0"