"""
Shared infrastructure: error taxonomy, retry decisions and the credential pool.

Submodules are imported directly (``graphbatch.infrastructure.credential_pool``)
so that configuration can depend on the error types without a cycle.
"""
