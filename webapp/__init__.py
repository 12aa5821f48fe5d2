"""Building blocks for WSGI web applications: servers, redirects, TLS helpers, go-get tags, JSON endpoints and assets."""

__version__ = "0.1.0"