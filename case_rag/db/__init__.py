"""Database layer for documents, chunks, jobs and test cases."""

from case_rag.db.engine import close_engine, create_schema, get_database_url, get_session, init_engine

__all__ = ["close_engine", "create_schema", "get_database_url", "get_session", "init_engine"]
