"""
Multi-step operations built on storage adapter primitives.

Contains the archive engine, the upload/download pipeline with cross-storage
transfers, and public link resolution.
"""
