"""
HistoryLab chat backend.

Subpackages
-----------
- chat : conversation model, tools, streaming, reconciliation, turn orchestration
- api : FastAPI router, request models, JWT helpers, search and S3 adapters
- database : settings, SQLAlchemy engine, entities, DAOs and transactional services
"""
