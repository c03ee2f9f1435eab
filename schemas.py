from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UserCreate(BaseModel):
    username: str = Field(min_length=1)
    email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=1)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class Token(BaseModel):
    access_token: str
    token_type: str


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)


class CollaboratorAdd(BaseModel):
    user_id: Optional[str] = None
    username: Optional[str] = None
    role: str = "collaborator"


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    status: str = "pending"
    priority: str = "medium"
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    """The only task fields a client may change; anything else is rejected."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None
    tags: Optional[List[str]] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class ExecuteRequest(BaseModel):
    task: str = Field(min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)
    project_id: Optional[str] = None


class FigmaNodeRequest(BaseModel):
    file_key: Optional[str] = Field(default=None, alias="fileKey")
    node_id: Optional[str] = Field(default=None, alias="nodeId")
    access_token: Optional[str] = Field(default=None, alias="accessToken")

    model_config = ConfigDict(populate_by_name=True)
