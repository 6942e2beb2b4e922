from .config import Settings
from .database import create_db_engine, get_db, init_db

__all__ = ["Settings", "create_db_engine", "get_db", "init_db"]
