"""Microsoft Graph drive data plane: retrying transport, resumable uploads and delta sync."""

__version__ = "0.1.0"
