from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, EmailStr


class UserCreate(BaseModel):
    full_name: str
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    personal_tags: Optional[List[str]] = None


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str


class ProjectCreate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    links: Optional[List[Any]] = None
    tags: Optional[List[str]] = None
    available_categories: Optional[List[str]] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    archived: Optional[bool] = None
    links: Optional[List[Any]] = None
    attachments: Optional[List[Any]] = None
    tags: Optional[List[str]] = None
    available_categories: Optional[List[str]] = None


class MemberRoleUpdate(BaseModel):
    role: Optional[str] = None


class OwnershipTransfer(BaseModel):
    new_owner_id: Optional[int] = None


class InvitationCreate(BaseModel):
    email: EmailStr
    role: str


class TaskCreate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = "todo"
    priority: Optional[str] = "medium"
    category: Optional[str] = None
    category_id: Optional[str] = None  # alias of category
    tags: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    deadline: Optional[datetime] = None  # alias of due_date
    project_id: Optional[int] = None
    assignee_id: Optional[int] = None
    order_key: Optional[str] = None
    version: Optional[int] = None
    is_recurring: Optional[bool] = None
    recurrence_pattern: Optional[str] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    category_id: Optional[str] = None
    tags: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    deadline: Optional[datetime] = None
    assignee_id: Optional[int] = None
    order_key: Optional[str] = None
    version: Optional[int] = None
    is_recurring: Optional[bool] = None
    recurrence_pattern: Optional[str] = None


class CommentCreate(BaseModel):
    text: str
    mentioned_users: Optional[List[int]] = None


class PermissionCheck(BaseModel):
    task_id: int
    action: str


class BatchPermissionCheck(BaseModel):
    task_ids: List[int]
    action: str


class BoardCreate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    thumbnail: Optional[str] = None
    project_id: Optional[int] = None


class BoardUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    thumbnail: Optional[str] = None


class BoardElementCreate(BaseModel):
    type: str
    position_x: Optional[float] = None
    position_y: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    z_index: Optional[int] = None
    rotation: Optional[float] = None
    content: Optional[str] = None
    image_url: Optional[str] = None
    color: Optional[str] = None
    font_size: Optional[int] = None


class BoardElementUpdate(BaseModel):
    type: Optional[str] = None
    position_x: Optional[float] = None
    position_y: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    z_index: Optional[int] = None
    rotation: Optional[float] = None
    content: Optional[str] = None
    image_url: Optional[str] = None
    color: Optional[str] = None
    font_size: Optional[int] = None
