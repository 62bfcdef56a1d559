"""Infrastructure layer package.

Implements Port interfaces with concrete adapters (in-memory, PostgreSQL).
The metering layer depends on src.ports only, never on this package.
"""
