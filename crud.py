"""Store operations shared by the REST routes and the relay."""
import logging
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
from auth import get_password_hash, require_project_access
from errors import AccessDeniedError, InternalError, NotFoundError, ValidationError
from schemas import CollaboratorAdd, ProjectCreate, TaskCreate, TaskUpdate, UserCreate

logger = logging.getLogger("CollabBackend.crud")


def create_user(db: Session, user_in: UserCreate) -> models.User:
    existing = (
        db.query(models.User)
        .filter(or_(models.User.username == user_in.username, models.User.email == user_in.email))
        .first()
    )
    if existing:
        raise ValidationError("User already exists")
    user = models.User(
        username=user_in.username,
        email=user_in.email,
        hashed_password=get_password_hash(user_in.password),
        role="user",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def project_summary(db: Session, project: models.Project) -> dict:
    collaborator_count = (
        db.query(func.count(models.ProjectCollaborator.id))
        .filter(models.ProjectCollaborator.project_id == project.id)
        .scalar()
    )
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "owner_id": project.owner_id,
        "owner_name": project.owner.username if project.owner else None,
        "status": project.status,
        "settings": project.settings or {},
        "collaborator_count": collaborator_count,
        "created_at": project.created_at.isoformat() if project.created_at else None,
        "updated_at": project.updated_at.isoformat() if project.updated_at else None,
    }


def list_projects(db: Session, user: models.User) -> List[dict]:
    member_of = db.query(models.ProjectCollaborator.project_id).filter(
        models.ProjectCollaborator.user_id == user.id
    )
    projects = (
        db.query(models.Project)
        .filter(or_(models.Project.owner_id == user.id, models.Project.id.in_(member_of)))
        .order_by(models.Project.updated_at.desc())
        .all()
    )
    return [project_summary(db, project) for project in projects]


def create_project(db: Session, project_in: ProjectCreate, user: models.User) -> dict:
    project = models.Project(
        name=project_in.name,
        description=project_in.description,
        owner_id=user.id,
        settings=project_in.settings,
    )
    db.add(project)
    db.commit()
    db.refresh(project)
    log_activity(db, user.id, project.id, "project_created", {"name": project.name})
    return project_summary(db, project)


def project_detail(db: Session, project: models.Project) -> dict:
    detail = project_summary(db, project)
    detail["collaborators"] = [
        {
            "id": membership.user.id,
            "username": membership.user.username,
            "email": membership.user.email,
            "avatar_url": membership.user.avatar_url,
            "role": membership.role,
            "joined_at": membership.joined_at.isoformat() if membership.joined_at else None,
        }
        for membership in project.collaborators
    ]
    return detail


def add_collaborator(db: Session, project_id: str, request: CollaboratorAdd, actor: models.User) -> dict:
    project = require_project_access(db, project_id, actor)
    if project.owner_id != actor.id:
        raise AccessDeniedError("Only the project owner can add collaborators")
    if not request.user_id and not request.username:
        raise ValidationError("user_id or username is required")

    query = db.query(models.User)
    if request.user_id:
        query = query.filter(models.User.id == request.user_id)
    else:
        query = query.filter(models.User.username == request.username)
    user = query.first()
    if user is None:
        raise NotFoundError("User not found")
    if user.id == project.owner_id:
        raise ValidationError("The owner already has access to this project")

    membership = models.ProjectCollaborator(project_id=project.id, user_id=user.id, role=request.role)
    db.add(membership)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError("User is already a collaborator")
    log_activity(db, actor.id, project.id, "collaborator_added", {"user_id": user.id, "role": request.role})
    return {"project_id": project.id, "user": user.public(), "role": membership.role}


def list_tasks(db: Session, project_id: str) -> List[dict]:
    tasks = (
        db.query(models.Task)
        .filter(models.Task.project_id == project_id)
        .order_by(models.Task.created_at.desc())
        .all()
    )
    return [task.to_dict() for task in tasks]


def create_task(db: Session, project_id: str, task_in: TaskCreate, user: models.User) -> dict:
    task = models.Task(project_id=project_id, created_by=user.id, **task_in.model_dump())
    db.add(task)
    db.commit()
    db.refresh(task)
    log_activity(db, user.id, project_id, "task_created", {"task_id": task.id, "title": task.title})
    return task.to_dict()


def update_task(db: Session, project_id: str, task_id: str, updates: TaskUpdate, user: models.User) -> dict:
    """
    Apply an allow-listed field update to a task and append one activity row.

    The task row is written in a single statement; the activity row is a second,
    separate commit, so a failure between the two loses only the log entry.
    """
    require_project_access(db, project_id, user)
    changes = updates.changes()
    if not changes:
        raise ValidationError("No task fields to update")
    if "title" in changes and not changes["title"]:
        raise ValidationError("Task title cannot be empty")

    task = (
        db.query(models.Task)
        .filter(models.Task.id == task_id, models.Task.project_id == project_id)
        .first()
    )
    if task is None:
        raise NotFoundError("Task not found")

    for key, value in changes.items():
        setattr(task, key, value)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Task update failed for {task_id}: {e}")
        raise InternalError("Failed to update task")
    db.refresh(task)

    log_activity(db, user.id, project_id, "task_updated", {"task_id": task_id, "updates": updates.model_dump(mode="json", exclude_unset=True)})
    return task.to_dict()


def log_activity(db: Session, user_id: str, project_id: Optional[str], action: str, details: dict):
    entry = models.ActivityLog(user_id=user_id, project_id=project_id, action=action, details=details)
    db.add(entry)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Could not record activity {action} for project {project_id}: {e}")


def recent_activity(db: Session, project_id: str, limit: int = 50) -> List[dict]:
    rows = (
        db.query(models.ActivityLog)
        .filter(models.ActivityLog.project_id == project_id)
        .order_by(models.ActivityLog.created_at.desc())
        .limit(limit)
        .all()
    )
    return [row.to_dict() for row in rows]
