"""vaultsync - keep a local vault consistent with a remote file store."""

__version__ = "0.1.0"
