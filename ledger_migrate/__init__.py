"""
Ledger Migrate

Moves storyteller, story, theme, quote and media records from the source
record system into the relational target store.

Supports:
- Cursor-paginated, rate-limited extraction with retries
- Identifier and fuzzy-name resolution against existing target rows
- Dependency-ordered, idempotent upserts keyed by source id
- Two-sided repair of many-to-many association columns
- Verification reports and a reverse-order cascading reset
"""

__version__ = "0.1.0"
