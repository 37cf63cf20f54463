"""Network sentinel for OT environments: listens for unexpected connections and scans for unexpected services."""

__version__ = "0.1.0"
