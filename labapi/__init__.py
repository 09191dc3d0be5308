"""Laboratory resource API: security control plane."""

__version__ = "1.4.0"
