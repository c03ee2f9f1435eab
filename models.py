import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from database import Base


def new_id():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True, default=new_id)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    avatar_url = Column(String, nullable=True)
    role = Column(String, default="user")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    projects = relationship("Project", back_populates="owner")

    def public(self):
        return {"id": self.id, "username": self.username, "email": self.email, "role": self.role}


class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, index=True, default=new_id)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False)
    status = Column(String, default="active")
    settings = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    owner = relationship("User", back_populates="projects")
    collaborators = relationship("ProjectCollaborator", back_populates="project")
    tasks = relationship("Task", back_populates="project")


class ProjectCollaborator(Base):
    __tablename__ = "project_collaborators"
    __table_args__ = (UniqueConstraint("project_id", "user_id"),)

    id = Column(String, primary_key=True, index=True, default=new_id)
    project_id = Column(String, ForeignKey("projects.id"), index=True, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    role = Column(String, default="collaborator")
    joined_at = Column(DateTime, default=utcnow)

    user = relationship("User")
    project = relationship("Project", back_populates="collaborators")


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, index=True, default=new_id)
    project_id = Column(String, ForeignKey("projects.id"), index=True, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, default="pending")
    priority = Column(String, default="medium")
    assignee_id = Column(String, ForeignKey("users.id"), nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    due_date = Column(DateTime, nullable=True)
    tags = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="tasks")
    assignee = relationship("User", foreign_keys=[assignee_id])
    creator = relationship("User", foreign_keys=[created_by])

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "assignee_id": self.assignee_id,
            "assignee_name": self.assignee.username if self.assignee else None,
            "created_by": self.created_by,
            "created_by_name": self.creator.username if self.creator else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "tags": self.tags or [],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Agent(Base):
    __tablename__ = "ai_agents"

    id = Column(String, primary_key=True, index=True, default=new_id)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)  # design, development, content, analysis, other
    description = Column(Text, nullable=True)
    capabilities = Column(JSON, default=list)
    status = Column(String, default="active")
    configuration = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "capabilities": self.capabilities or [],
            "status": self.status,
            "configuration": self.configuration or {},
        }


class Execution(Base):
    __tablename__ = "ai_executions"

    id = Column(String, primary_key=True, index=True, default=new_id)
    agent_id = Column(String, ForeignKey("ai_agents.id"), index=True, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    project_id = Column(String, ForeignKey("projects.id"), nullable=True)
    task = Column(Text, nullable=False)
    context = Column(JSON, default=dict)
    result = Column(Text, nullable=True)
    status = Column(String, default="pending")  # pending, completed, failed
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    agent = relationship("Agent")

    def to_dict(self):
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "agent_name": self.agent.name if self.agent else None,
            "agent_type": self.agent.type if self.agent else None,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "task": self.task,
            "context": self.context or {},
            "result": self.result,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class FileUpload(Base):
    __tablename__ = "file_uploads"

    id = Column(String, primary_key=True, index=True, default=new_id)
    filename = Column(String, nullable=False)
    original_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    size = Column(Integer, nullable=False)
    path = Column(String, nullable=False)
    uploaded_by = Column(String, ForeignKey("users.id"), nullable=False)
    project_id = Column(String, ForeignKey("projects.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    uploader = relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "filename": self.filename,
            "original_name": self.original_name,
            "mime_type": self.mime_type,
            "size": self.size,
            "url": f"/api/files/{self.id}",
            "uploaded_by": self.uploaded_by,
            "uploaded_by_username": self.uploader.username if self.uploader else None,
            "project_id": self.project_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class UserSession(Base):
    """Presence row for one live relay connection."""
    __tablename__ = "user_sessions"

    id = Column(String, primary_key=True, index=True)  # connection id
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    socket_id = Column(String, nullable=True)
    project_id = Column(String, ForeignKey("projects.id"), nullable=True)
    is_online = Column(Boolean, default=True)
    last_seen = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id = Column(String, primary_key=True, index=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    project_id = Column(String, ForeignKey("projects.id"), index=True, nullable=True)
    action = Column(String, nullable=False)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user.username if self.user else None,
            "project_id": self.project_id,
            "action": self.action,
            "details": self.details or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
