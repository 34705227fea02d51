from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class PortMappingResponse(BaseModel):
    container_port: int
    host_port: int
    hostname: str

    class Config:
        from_attributes = True


class EnvFileResponse(BaseModel):
    relative_path: str
    content: str

    class Config:
        from_attributes = True


class EnvironmentSummary(BaseModel):
    name: str
    branch: str
    status: str
    container_id: Optional[str] = None
    port_mappings: List[PortMappingResponse] = []

    class Config:
        from_attributes = True


class EnvironmentResponse(EnvironmentSummary):
    id: int
    project_id: int
    worktree_path: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    env_files: List[EnvFileResponse] = []


class ProjectResponse(BaseModel):
    id: int
    name: str
    repo_path: str
    status: str
    created_at: datetime
    environments: List[EnvironmentSummary] = []

    class Config:
        from_attributes = True


class EnvironmentCreate(BaseModel):
    repo_path: str = Field(min_length=1)
    branch: str = Field(min_length=1)


class EnvironmentBranch(BaseModel):
    branch: str = Field(min_length=1)


class EnvVarUpdate(BaseModel):
    assignment: str = Field(min_length=1, description="KEY=VALUE")


class SettingBase(BaseModel):
    key: str
    value: str


class SettingUpdate(BaseModel):
    value: str


class SettingResponse(SettingBase):
    class Config:
        from_attributes = True


class ErrorResponse(BaseModel):
    error: str
