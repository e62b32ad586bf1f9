"""
ACME (RFC 8555) protocol core: signed requests, nonce pool and typed services.
"""
__version__ = "0.4.0"
