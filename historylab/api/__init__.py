"""
API Package — FastAPI Router • Models • JWT Utils • Search & S3
===============================================================

Contents
--------
- fast_api
    Router: chat turns over SSE, feedback, document clicks, rendered history, export, ping.
- models
    Pydantic request contracts (camelCase on the wire).
- utils
    JWT helpers (python-jose): token creation, verification and profile claims.
- retrieval
    LlamaIndex vector index search backing ``queryCollection``.
- aws_bucket_funcs
    boto3 S3 access backing ``getDocumentText``.
"""
