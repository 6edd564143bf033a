# src/dcloud/storage/__init__.py
"""
Blob-store collaborators.

The registry only ever stores a content locator and a fingerprint; these
modules move the bytes.
"""
