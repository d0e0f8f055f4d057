"""Resumable GCP provisioning installer.

Drives a fixed sequence of idempotent provisioning steps against the Google
Cloud control plane, persisting progress so an interrupted installation can
resume where it stopped.
"""

__version__ = '2.3.0'
