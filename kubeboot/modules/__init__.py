"""Bootstrap components, one module per CLI command."""
from . import control_plane, fabric, installer, joiner, verify

__all__ = ["control_plane", "fabric", "installer", "joiner", "verify"]
