"""Layer 4 connection routing: connections, matchers, handlers, routes, listeners and servers."""

__version__ = "0.1.0"