"""Credential, file storage, and cloud service helpers."""
