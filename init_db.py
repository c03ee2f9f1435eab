"""
Create the database tables and seed the default users, project and agents.
Usage: python init_db.py
"""
import logging

from sqlalchemy.orm import Session

import models
from auth import get_password_hash
from database import Base, SessionLocal, engine

logger = logging.getLogger("CollabBackend.init_db")

DEFAULT_USERS = [
    {"id": "1", "username": "admin", "email": "admin@example.com", "password": "password", "role": "admin"},
    {"id": "2", "username": "designer", "email": "designer@example.com", "password": "design123", "role": "designer"},
    {"id": "3", "username": "developer", "email": "dev@example.com", "password": "dev123", "role": "developer"},
]

DEFAULT_AGENTS = [
    {
        "id": "1",
        "name": "Design Assistant",
        "type": "design",
        "description": "Helps with UI/UX design and visual elements",
        "capabilities": ["color_schemes", "layout_suggestions", "component_generation"],
        "configuration": {"model": "gpt-4", "temperature": 0.7},
    },
    {
        "id": "2",
        "name": "Code Generator",
        "type": "development",
        "description": "Generates code based on design specifications",
        "capabilities": ["react_components", "styling", "api_integration"],
        "configuration": {"model": "gpt-4", "temperature": 0.3},
    },
    {
        "id": "3",
        "name": "Content Writer",
        "type": "content",
        "description": "Creates and optimizes content for projects",
        "capabilities": ["copywriting", "seo_optimization", "content_strategy"],
        "configuration": {"model": "gpt-4", "temperature": 0.8},
    },
]


def seed_defaults(db: Session) -> bool:
    """Insert the demo data into an empty database. Returns False if users already exist."""
    if db.query(models.User).count() > 0:
        return False

    for user in DEFAULT_USERS:
        db.add(models.User(
            id=user["id"],
            username=user["username"],
            email=user["email"],
            hashed_password=get_password_hash(user["password"]),
            role=user["role"],
        ))
    db.flush()

    db.add(models.Project(
        id="1",
        name="Portfolio Template",
        description="A modern portfolio template for creative professionals",
        owner_id="1",
        settings={"theme": "minimal", "layout": "grid", "aiEnabled": True},
    ))
    db.flush()
    db.add(models.ProjectCollaborator(id="1", project_id="1", user_id="2", role="collaborator"))
    db.add(models.ProjectCollaborator(id="2", project_id="1", user_id="3", role="collaborator"))
    db.add(models.Task(
        id="1",
        project_id="1",
        title="Build collaborative AI platforms like Figma meets Notion",
        description="Help me build collaborative AI platforms like Figma meets Notion with GitHub-style resource management",
        status="in_progress",
        priority="high",
        assignee_id="1",
        created_by="1",
        tags=["ai", "collaboration", "platform"],
    ))
    for agent in DEFAULT_AGENTS:
        db.add(models.Agent(**agent))
    db.commit()
    logger.info("Default data inserted")
    return True


def init_db(bind=engine, session_factory=SessionLocal):
    Base.metadata.create_all(bind=bind)
    with session_factory() as db:
        seed_defaults(db)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    print("Creating database tables (if not exists)...")
    init_db()
    print("Done.")
