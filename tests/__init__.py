"""driveupload test suite.

- test_hashing.py / test_signing.py / test_cipher.py: quick-upload building blocks
- test_negotiator.py: negotiation loop, range challenges and listing recovery
- test_objectstore.py / test_transfer.py / test_credentials.py: object-store transfers
- test_dispatcher.py: upload mode selection, state machine and failure handling
- test_cache.py / test_filesystem.py: TTL caches and cached path resolution
"""
