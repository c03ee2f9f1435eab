from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Depends, File, Form, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.security import OAuth2PasswordRequestForm
from typing import List, Optional
from datetime import datetime, timezone
import json
import logging
from sqlalchemy.orm import Session

import models, auth, crud, figma_proxy, uploads
from agent_responder import AgentResponder
from database import SessionLocal, get_db
from errors import AuthError, register_error_handlers
from init_db import init_db
from relay import CollaborationRelay, RelayRegistry, now_iso
from schemas import (
    CollaboratorAdd,
    ExecuteRequest,
    FigmaNodeRequest,
    LoginRequest,
    ProjectCreate,
    TaskCreate,
    TaskUpdate,
    Token,
    UserCreate,
)
from settings import FRONTEND_URL, LOG_LEVEL

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("CollabBackend")

# Create tables and seed demo data; a store failure here is fatal
try:
    init_db()
except Exception as e:
    logger.critical(f"Database initialisation failed: {e}")
    raise

app = FastAPI(title="Collaborative AI Workspace", version="2.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)

responder = AgentResponder(SessionLocal)
registry = RelayRegistry()
relay = CollaborationRelay(registry, responder, SessionLocal)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info(f"{request.method} {request.url.path}")
    return await call_next(request)


def get_project(project_id: str, current_user: models.User = Depends(auth.get_current_user),
                db: Session = Depends(get_db)) -> models.Project:
    return auth.require_project_access(db, project_id, current_user)


@app.get("/")
async def root():
    return {"message": "Collaboration Backend Online"}


@app.get("/api/health")
async def health():
    return {
        "success": True,
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": app.version,
        "services": {
            "database": "connected",
            "websocket": "active",
            "connections": registry.connection_count(),
        },
    }

# Auth Routes
@app.post("/api/auth/register")
def register(user: UserCreate, db: Session = Depends(get_db)):
    new_user = crud.create_user(db, user)
    logger.info(f"Registered user {new_user.username}")
    return {"success": True, "token": auth.token_for_user(new_user), "user": new_user.public()}


@app.post("/api/auth/login")
def login(credentials: LoginRequest, db: Session = Depends(get_db)):
    user = auth.authenticate_user(db, credentials.username, credentials.password)
    if user is None:
        raise AuthError("Invalid credentials", status_code=status.HTTP_401_UNAUTHORIZED)
    return {"success": True, "token": auth.token_for_user(user), "user": user.public()}


@app.post("/api/auth/token", response_model=Token)
def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    user = auth.authenticate_user(db, form_data.username, form_data.password)
    if user is None:
        raise AuthError("Incorrect username or password", status_code=status.HTTP_401_UNAUTHORIZED)
    return {"access_token": auth.token_for_user(user), "token_type": "bearer"}


@app.get("/api/users/profile")
async def read_profile(current_user: models.User = Depends(auth.get_current_user)):
    profile = current_user.public()
    profile["avatar_url"] = current_user.avatar_url
    profile["created_at"] = current_user.created_at.isoformat() if current_user.created_at else None
    return {"success": True, "user": profile}

# --- Projects ---

@app.get("/api/projects")
def get_projects(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    return {"success": True, "projects": crud.list_projects(db, current_user)}


@app.post("/api/projects")
def create_project(project: ProjectCreate, current_user: models.User = Depends(auth.get_current_user),
                   db: Session = Depends(get_db)):
    return {"success": True, "project": crud.create_project(db, project, current_user)}


@app.get("/api/projects/{project_id}")
def get_project_detail(project: models.Project = Depends(get_project), db: Session = Depends(get_db)):
    return {"success": True, "project": crud.project_detail(db, project)}


@app.post("/api/projects/{project_id}/collaborators")
def add_collaborator(project_id: str, request: CollaboratorAdd,
                     current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    return {"success": True, "collaborator": crud.add_collaborator(db, project_id, request, current_user)}

# --- Tasks ---

@app.get("/api/projects/{project_id}/tasks")
def get_tasks(project: models.Project = Depends(get_project), db: Session = Depends(get_db)):
    return {"success": True, "tasks": crud.list_tasks(db, project.id)}


@app.post("/api/projects/{project_id}/tasks")
def create_task(task: TaskCreate, project: models.Project = Depends(get_project),
                current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    return {"success": True, "task": crud.create_task(db, project.id, task, current_user)}


@app.patch("/api/projects/{project_id}/tasks/{task_id}")
async def update_task(project_id: str, task_id: str, updates: TaskUpdate,
                      current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    task = crud.update_task(db, project_id, task_id, updates, current_user)
    await relay.broadcast_to_project(project_id, "task_updated", {
        "task_id": task_id,
        "project_id": project_id,
        "updates": updates.model_dump(mode="json", exclude_unset=True),
        "task": task,
        "updated_by": current_user.public(),
        "timestamp": now_iso(),
    })
    return {"success": True, "task": task}

# --- Agents ---

@app.get("/api/agents")
def get_agents(current_user: models.User = Depends(auth.get_current_user)):
    return {"success": True, "agents": responder.list_agents()}


@app.get("/api/agents/{agent_id}/stats")
def get_agent_stats(agent_id: str, current_user: models.User = Depends(auth.get_current_user)):
    return {"success": True, "stats": responder.agent_stats(agent_id)}


@app.post("/api/agents/{agent_id}/execute")
def execute_agent(agent_id: str, request: ExecuteRequest,
                  current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    if request.project_id:
        auth.require_project_access(db, request.project_id, current_user)
    outcome = responder.execute(agent_id, request.task, request.context, current_user.id, request.project_id)
    return {"success": True, "result": outcome.to_dict()}


@app.get("/api/executions")
def get_executions(project_id: Optional[str] = None, limit: int = 50,
                   current_user: models.User = Depends(auth.get_current_user)):
    history = responder.execution_history(current_user.id, project_id, min(max(limit, 1), 200))
    return {"success": True, "executions": history}

# --- Files ---

@app.post("/api/upload")
async def upload_files(files: List[UploadFile] = File(...), project_id: Optional[str] = Form(None),
                       current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    if project_id:
        auth.require_project_access(db, project_id, current_user)
    stored = await uploads.store_uploads(db, files, current_user, project_id)
    return {"success": True, "files": stored}


@app.get("/api/files/{file_id}")
def download_file(file_id: str, db: Session = Depends(get_db)):
    record = uploads.get_file(db, file_id)
    return FileResponse(record.path, media_type=record.mime_type, filename=record.original_name)


@app.delete("/api/files/{file_id}")
def delete_file(file_id: str, current_user: models.User = Depends(auth.get_current_user),
                db: Session = Depends(get_db)):
    uploads.delete_file(db, file_id, current_user)
    return {"success": True, "message": "File deleted"}


@app.get("/api/projects/{project_id}/files")
def get_project_files(project: models.Project = Depends(get_project), db: Session = Depends(get_db)):
    return {"success": True, "files": uploads.project_files(db, project.id)}

# --- Collaboration ---

@app.get("/api/projects/{project_id}/users")
def get_project_users(project: models.Project = Depends(get_project)):
    return {"success": True, "users": relay.project_users(project.id)}


@app.get("/api/projects/{project_id}/activity")
def get_activity(project: models.Project = Depends(get_project), db: Session = Depends(get_db)):
    return {"success": True, "activities": crud.recent_activity(db, project.id)}

# --- Design tool proxy ---

@app.post("/api/figma/layers")
async def figma_layers(request: FigmaNodeRequest):
    layers = await figma_proxy.fetch_layers(request.file_key, request.node_id, request.access_token)
    return {"success": True, "layers": layers}


@app.post("/api/figma/image")
async def figma_image(request: FigmaNodeRequest):
    image = await figma_proxy.fetch_image(request.file_key, request.node_id, request.access_token)
    return {"success": True, **image}

# --- WebSockets ---

@app.websocket("/ws")
async def ws_relay(websocket: WebSocket):
    await websocket.accept()
    connection_id = relay.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await relay.send(connection_id, "error", {"message": "Malformed message"})
                continue
            if not isinstance(message, dict):
                await relay.send(connection_id, "error", {"message": "Malformed message"})
                continue
            data = message.get("data")
            await relay.dispatch(connection_id, message.get("event"), data if isinstance(data, dict) else {})
    except WebSocketDisconnect:
        logger.info(f"Connection {connection_id} disconnected (WebSocketDisconnect)")
    except Exception as e:
        logger.error(f"Relay WS error on {connection_id}: {e}")
    finally:
        await relay.disconnect(connection_id)
