"""
Ingestion components for the mailbox sync service.

- email/: Gmail change fetching, classification, processing and sync orchestration
- core/: PostgreSQL pool/schema and the row stores (cursors, documents, settings)
- utils/: Common utilities (credential encryption)
"""
