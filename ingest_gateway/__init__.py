"""HTTP surface of the fan-out engine: media server hooks and the control API."""

__version__ = "1.0.0"
