"""
Configuration management for the Finder API.

Contains the Pydantic settings model covering server binding, storage
backends, transfer limits, public links and CORS.
"""
