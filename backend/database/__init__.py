from .connection import get_engine, get_session_factory, init_db, dispose_db

__all__ = ['get_engine', 'get_session_factory', 'init_db', 'dispose_db']
