"""Database package initialization."""
from db.database import engine, SessionLocal, Base, init_db, seed_db

__all__ = ["engine", "SessionLocal", "Base", "init_db", "seed_db"]
