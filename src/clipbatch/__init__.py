"""clipbatch: batch video generation against a slow, rate-limited remote API."""

__version__ = "0.1.0"
