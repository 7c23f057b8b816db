"""
Storage layer for the Finder API.

Contains the path resolver, the storage adapter protocol, the local and S3
backends, and the read-only registry that maps storage keys to backends.
"""
