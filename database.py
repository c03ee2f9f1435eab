import os
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from settings import DATABASE_URL


def prepare_sqlite_file(url: str):
    """Create the parent directory and the file for a sqlite:/// URL so permission errors surface early."""
    if not url.startswith("sqlite:///") or url.endswith(":memory:"):
        return
    fs_path = url.replace("sqlite:///", "")
    parent = os.path.dirname(fs_path)
    try:
        if parent and not os.path.exists(parent):
            os.makedirs(parent, exist_ok=True)
        if not os.path.exists(fs_path):
            open(fs_path, "a").close()
    except Exception as e:
        raise RuntimeError(f"Unable to prepare SQLite database file at {fs_path}: {e}")


def make_engine(url: str):
    prepare_sqlite_file(url)
    try:
        return create_engine(url, connect_args={"check_same_thread": False} if url.startswith("sqlite:") else {})
    except Exception as e:
        raise RuntimeError(f"Failed to create database engine for {url}: {e}")


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
