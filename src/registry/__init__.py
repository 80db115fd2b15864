"""npm registry access.

- types.py: typed views over packuments and version manifests
- cache.py: memory and disk TTL cache for metadata
- client.py: async metadata and tarball client with request deduplication
"""
