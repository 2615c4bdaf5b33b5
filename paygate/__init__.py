"""x402 SPL-token payment verification for Flask services."""

__version__ = "1.0.0"
