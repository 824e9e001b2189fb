from .session import SessionLocal, engine, get_db_session, session_scope

__all__ = ["SessionLocal", "engine", "get_db_session", "session_scope"]
