from typing import Optional

from pydantic import BaseModel, Field


class CreateTaskRequest(BaseModel):
    actor_id: int
    type_id: int
    title: str
    description: Optional[str] = None
    priority: int = Field(default=3, ge=1, le=5)
    card_id: Optional[int] = None


class TaskActionRequest(BaseModel):
    actor_id: int
    version: int


class WorkSessionRequest(BaseModel):
    actor_id: int


class UpdateTaskRequest(BaseModel):
    actor_id: int
    version: int
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[int] = Field(default=None, ge=1, le=5)
    type_id: Optional[int] = None

    def changed_fields(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={"actor_id", "version"})
