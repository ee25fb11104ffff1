"""Voice survey backend - FastAPI service, storage and provider adapters."""
