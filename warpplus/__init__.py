"""WARP proxy servers, keys, registration API, identity storage and an endpoint probe."""

__version__ = "0.1.0"