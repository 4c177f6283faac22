"""Email ingestion: models, parsing, IMAP connection management and deduplication"""
