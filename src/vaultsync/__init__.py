"""vaultsync: two-way sync between a Notion database and markdown notes."""

__version__ = "0.1.0"
