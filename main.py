import asyncio
import contextlib
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    HTTPException,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session

import boards
import config
import emails
import history
import invitations
import projects
import schemas
import tasks
from auth import create_access_token, get_current_user, get_password_hash, user_from_token, verify_password
from database import Base, SessionLocal, engine, get_db
from errors import AppError
from logging_setup import setup_logging
from models import Project, ProjectMember, User, utcnow
from notifications import Notifier, project_room, queue_forwarder, user_room
from permissions import backfill_owner_memberships, check_task_permission
from rate_limiter import (
    InMemoryRateLimitStore,
    auth_rate_limiter,
    password_reset_rate_limiter,
    upload_rate_limiter,
)
from recurring import run_recurring_processor
from transform import format_timestamp, to_response_shape

logger = logging.getLogger(__name__)

notifier = Notifier()
rate_limit_store = InMemoryRateLimitStore()
auth_limiter = auth_rate_limiter(rate_limit_store)
upload_limiter = upload_rate_limiter(rate_limit_store)
password_reset_limiter = password_reset_rate_limiter(rate_limit_store)


def get_notifier():
    return notifier


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        backfill_owner_memberships(db)
    finally:
        db.close()

    processor = None
    if config.RECURRING_ENABLED:
        processor = asyncio.create_task(
            run_recurring_processor(SessionLocal, notifier, interval_minutes=config.RECURRING_INTERVAL_MINUTES)
        )
    yield
    if processor is not None:
        processor.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await processor


# Initialize app
app = FastAPI(title="Tasktracker API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

os.makedirs("static", exist_ok=True)
os.makedirs(config.UPLOAD_DIR, exist_ok=True)
app.mount("/static", StaticFiles(directory="static"), name="static")


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def user_out(user: User) -> dict:
    return to_response_shape(user, "user")


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": format_timestamp(utcnow())}


# ========== AUTH ==========

@app.post("/register", status_code=status.HTTP_201_CREATED, dependencies=[Depends(auth_limiter)])
def register(user: schemas.UserCreate, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    email = user.email.lower()
    existing = db.query(User).filter(User.email == email).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already exists")
    token = str(uuid.uuid4())

    new_user = User(
        full_name=user.full_name,
        email=email,
        password=get_password_hash(user.password),
        email_verification_token=token,
        personal_tags=[],
    )
    db.add(new_user)
    db.commit()
    db.refresh(new_user)
    logger.info("User registered id=%s", new_user.id)

    background_tasks.add_task(emails.send_verification_email, email, token)
    return {"message": "User created successfully", "user": user_out(new_user)}


@app.post("/login", dependencies=[Depends(auth_limiter)])
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == form_data.username.lower()).first()

    if not user or not verify_password(form_data.password, user.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    access_token = create_access_token(data={"sub": str(user.id)})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/verify-email", response_class=HTMLResponse)
def verify_email(token: str, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email_verification_token == token).first()
    if not user:
        return HTMLResponse("""
            <h2 style="font-family:Arial">Invalid or expired link</h2>
            <p>The verification link is invalid or has already been used.</p>
        """, status_code=400)

    user.is_verified = True
    user.email_verification_token = None  # consume the token so it can't be reused
    db.commit()

    return HTMLResponse(f"""
    <div style="font-family:Arial;max-width:600px;margin:40px auto;padding:24px;border:1px solid #eee;border-radius:10px;">
      <h2>Email Verified</h2>
      <p>{user.email} has been verified successfully.</p>
      <a href="{config.APP_URL}"
         style="display:inline-block;margin-top:14px;padding:10px 16px;background:#4CAF50;color:#fff;text-decoration:none;border-radius:6px;">
         Go to Login
      </a>
    </div>
""")


@app.post("/forgot-password", dependencies=[Depends(password_reset_limiter)])
def forgot_password(
    request: schemas.ForgotPasswordRequest, background_tasks: BackgroundTasks, db: Session = Depends(get_db)
):
    user = db.query(User).filter(User.email == request.email.lower()).first()
    if user:
        token = str(uuid.uuid4())
        user.reset_token = token
        user.reset_token_expires = utcnow() + timedelta(hours=1)
        db.commit()
        background_tasks.add_task(emails.send_password_reset_email, user.email, token)
    # same answer either way so accounts can't be enumerated
    return {"message": "If this email is registered, a reset link has been sent"}


@app.post("/reset-password", dependencies=[Depends(password_reset_limiter)])
def reset_password(reset: schemas.ResetPasswordRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.reset_token == reset.token).first()
    if not user or not user.reset_token_expires or user.reset_token_expires < utcnow():
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")
    if len(reset.new_password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")

    user.password = get_password_hash(reset.new_password)
    user.reset_token = None
    user.reset_token_expires = None
    db.commit()
    return {"message": "Password has been reset successfully"}


@app.get("/profile")
def get_profile(current_user: User = Depends(get_current_user)):
    return user_out(current_user)


@app.patch("/profile")
def update_profile(
    body: schemas.ProfileUpdate, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    data = body.model_dump(exclude_unset=True)
    if "full_name" in data:
        if not (data["full_name"] or "").strip():
            raise HTTPException(status_code=400, detail="Name is required")
        user.full_name = data["full_name"].strip()
    if "personal_tags" in data:
        user.personal_tags = list(data["personal_tags"] or [])
    db.commit()
    db.refresh(user)
    return user_out(user)


@app.put("/profile/change-password")
def change_password(
    body: schemas.ChangePasswordRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    if not verify_password(body.old_password, user.password):
        raise HTTPException(status_code=400, detail="Old password is not correct")

    user.password = get_password_hash(body.new_password)
    db.commit()
    return {"message": "Password has successfully been changed"}


# ========== PROJECTS ==========

@app.post("/projects", status_code=status.HTTP_201_CREATED)
def create_project(
    body: schemas.ProjectCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    project = projects.create_project(db, user, body.model_dump(exclude_unset=True))
    return projects.serialize_project(project)


@app.get("/projects")
def list_projects(
    include_archived: bool = False, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    return [projects.serialize_project(p) for p in projects.list_projects(db, user, include_archived)]


@app.get("/projects/{project_id}")
def get_project(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return projects.serialize_project(projects.get_project(db, user, project_id))


@app.patch("/projects/{project_id}")
def update_project(
    project_id: int,
    body: schemas.ProjectUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    events: Notifier = Depends(get_notifier),
):
    project = projects.update_project(db, user, project_id, body.model_dump(exclude_unset=True), events)
    return projects.serialize_project(project)


@app.delete("/projects/{project_id}")
def delete_project(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    projects.delete_project(db, user, project_id)
    return {"message": "Project deleted successfully"}


@app.get("/projects/{project_id}/tasks")
def list_project_tasks(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [tasks.serialize_task(t) for t in tasks.list_project_tasks(db, user, project_id)]


@app.get("/projects/{project_id}/members")
def list_members(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return projects.list_members(db, user, project_id)


@app.patch("/projects/{project_id}/members/{member_id}")
def update_member_role(
    project_id: int,
    member_id: int,
    body: schemas.MemberRoleUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    member = projects.update_member_role(db, user, project_id, member_id, body.role)
    return projects.serialize_member(member)


@app.delete("/projects/{project_id}/members/{member_id}")
def remove_member(
    project_id: int,
    member_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    events: Notifier = Depends(get_notifier),
):
    projects.remove_member(db, user, project_id, member_id, events)
    return {"success": True}


@app.post("/projects/{project_id}/leave")
def leave_project(
    project_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    events: Notifier = Depends(get_notifier),
):
    projects.leave_project(db, user, project_id, events)
    return {"success": True}


@app.post("/projects/{project_id}/transfer-ownership")
def transfer_ownership(
    project_id: int,
    body: schemas.OwnershipTransfer,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    project = projects.transfer_ownership(db, user, project_id, body.new_owner_id)
    return projects.serialize_project(project)


# ========== INVITATIONS ==========

@app.post("/projects/{project_id}/invitations", status_code=status.HTTP_201_CREATED)
def create_invitation(
    project_id: int,
    body: schemas.InvitationCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    events: Notifier = Depends(get_notifier),
):
    invitation = invitations.create_invitation(db, user, project_id, body.email, body.role, events)
    return {"invitation": invitations.serialize_invitation(invitation)}


@app.get("/projects/{project_id}/invitations")
def list_project_invitations(
    project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    found = invitations.list_project_invitations(db, user, project_id)
    return {"invitations": [invitations.serialize_invitation(i) for i in found]}


@app.get("/invitations/my")
def list_my_invitations(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return {"invitations": [invitations.serialize_invitation(i) for i in invitations.list_my_invitations(db, user)]}


@app.get("/invitations/{token}")
def get_invitation(token: str, db: Session = Depends(get_db)):
    return {"invitation": invitations.serialize_invitation(invitations.get_invitation(db, token))}


@app.post("/invitations/{token}/accept")
def accept_invitation(
    token: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    events: Notifier = Depends(get_notifier),
):
    member = invitations.accept_invitation(db, user, token, events)
    project = member.project
    return {
        "message": "Invitation accepted successfully",
        "project": {"id": project.id, "name": project.name, "color": project.color},
        "member": projects.serialize_member(member),
    }


@app.delete("/invitations/{token}")
def revoke_invitation(token: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    invitations.revoke_invitation(db, user, token)
    return {"message": "Invitation revoked successfully"}


@app.post("/invitations/{token}/resend")
def resend_invitation(token: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    invitation = invitations.resend_invitation(db, user, token)
    return {"message": "Invitation resent successfully", "invitation": invitations.serialize_invitation(invitation)}


# ========== TASKS ==========

@app.get("/tasks")
def list_tasks(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [tasks.serialize_task(t) for t in tasks.list_tasks(db, user)]


@app.post("/tasks", status_code=status.HTTP_201_CREATED)
def create_task(
    body: schemas.TaskCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    events: Notifier = Depends(get_notifier),
):
    task = tasks.create_task(db, user, body.model_dump(exclude_unset=True), events)
    return tasks.serialize_task(task)


@app.post("/tasks/validate-permission")
def validate_permission(
    body: schemas.PermissionCheck, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    task = tasks.get_task_or_404(db, body.task_id)
    allowed = check_task_permission(db, user.id, task, body.action)
    return {
        "task_id": body.task_id,
        "action": body.action,
        "has_permission": allowed,
        "task": tasks.serialize_task(task) if allowed else None,
    }


@app.post("/tasks/check-permissions")
def check_permissions(
    body: schemas.BatchPermissionCheck, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    return {"results": tasks.check_permissions(db, user, body.task_ids, body.action)}


@app.get("/tasks/{task_id}")
def get_task(task_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return tasks.serialize_task(tasks.get_task(db, user, task_id))


@app.patch("/tasks/{task_id}")
def update_task(
    task_id: int,
    body: schemas.TaskUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    events: Notifier = Depends(get_notifier),
):
    task = tasks.update_task(db, user, task_id, body.model_dump(exclude_unset=True), events)
    return tasks.serialize_task(task)


@app.delete("/tasks/{task_id}")
def delete_task(
    task_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    events: Notifier = Depends(get_notifier),
):
    tasks.delete_task(db, user, task_id, events)
    return {"message": "Task deleted successfully"}


@app.get("/tasks/{task_id}/history")
def task_history(task_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [history.serialize_entry(e) for e in history.get_task_history(db, user, task_id)]


@app.get("/tasks/{task_id}/comments")
def list_comments(task_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [tasks.serialize_comment(c) for c in tasks.list_comments(db, user, task_id)]


@app.post("/tasks/{task_id}/comments", status_code=status.HTTP_201_CREATED)
def add_comment(
    task_id: int,
    body: schemas.CommentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    events: Notifier = Depends(get_notifier),
):
    comment = tasks.add_comment(db, user, task_id, body.text, body.mentioned_users, events)
    return tasks.serialize_comment(comment)


@app.delete("/tasks/{task_id}/comments/{comment_id}")
def delete_comment(
    task_id: int, comment_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    tasks.delete_comment(db, user, task_id, comment_id)
    return {"success": True}


@app.post("/tasks/{task_id}/attachments", dependencies=[Depends(upload_limiter)])
async def upload_attachments(
    task_id: int,
    files: List[UploadFile] = File(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    created = []
    for file in files:
        content = await file.read()
        created.append(tasks.add_attachment(db, user, task_id, file.filename, file.content_type, content))
    return {
        "attachments": [to_response_shape(a, "attachment") for a in created],
        "message": f"{len(created)} file(s) uploaded successfully",
    }


@app.delete("/tasks/{task_id}/attachments/{attachment_id}")
def delete_attachment(
    task_id: int, attachment_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    tasks.delete_attachment(db, user, task_id, attachment_id)
    return {"success": True}


# ========== BOARDS ==========

@app.get("/boards")
def list_boards(
    project_id: Optional[int] = None, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    return [boards.serialize_board(b) for b in boards.list_boards(db, user, project_id)]


@app.post("/boards", status_code=status.HTTP_201_CREATED)
def create_board(body: schemas.BoardCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    board = boards.create_board(db, user, body.model_dump(exclude_unset=True))
    return boards.serialize_board(board, include_elements=True)


@app.get("/boards/{board_id}")
def get_board(board_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return boards.serialize_board(boards.get_board(db, user, board_id), include_elements=True)


@app.patch("/boards/{board_id}")
def update_board(
    board_id: int, body: schemas.BoardUpdate, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    board = boards.update_board(db, user, board_id, body.model_dump(exclude_unset=True))
    return boards.serialize_board(board, include_elements=True)


@app.delete("/boards/{board_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_board(board_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    boards.delete_board(db, user, board_id)


@app.post("/boards/{board_id}/elements", status_code=status.HTTP_201_CREATED)
def create_board_element(
    board_id: int,
    body: schemas.BoardElementCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    element = boards.create_element(db, user, board_id, body.model_dump(exclude_unset=True))
    return boards.serialize_element(element)


@app.patch("/boards/{board_id}/elements/{element_id}")
def update_board_element(
    board_id: int,
    element_id: int,
    body: schemas.BoardElementUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    element = boards.update_element(db, user, board_id, element_id, body.model_dump(exclude_unset=True))
    return boards.serialize_element(element)


@app.delete("/boards/{board_id}/elements/{element_id}")
def delete_board_element(
    board_id: int, element_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    boards.delete_element(db, user, board_id, element_id)
    return {"success": True}


# ========== REALTIME ==========

@app.websocket("/ws")
async def events_socket(websocket: WebSocket, token: str = ""):
    db = SessionLocal()
    try:
        user = user_from_token(token, db)
        if user is None:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        user_id = user.id
        project_ids = {m.project_id for m in db.query(ProjectMember).filter(ProjectMember.user_id == user_id).all()}
        # owners without a membership row still get their project events
        project_ids.update(p.id for p in db.query(Project).filter(Project.owner_id == user_id).all())
        rooms = [user_room(user_id)] + [project_room(pid) for pid in sorted(project_ids)]
    finally:
        db.close()

    # subscribe before accepting so nothing emitted during the handshake is lost
    queue = asyncio.Queue()
    forward = queue_forwarder(asyncio.get_running_loop(), queue)
    for room in rooms:
        notifier.subscribe(room, forward)

    async def pump():
        while True:
            message = await queue.get()
            await websocket.send_json(jsonable_encoder(message))

    sender = None
    try:
        await websocket.accept()
        sender = asyncio.create_task(pump())
        # client messages are ignored; receiving is how a disconnect is noticed
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("WebSocket closed user_id=%s", user_id)
    finally:
        if sender is not None:
            sender.cancel()
        for room in rooms:
            notifier.unsubscribe(room, forward)
